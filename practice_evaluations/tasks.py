"""Work that runs after a unit of work has committed."""
import atexit
import logging
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)

EXECUTOR_KEY = "practice_evaluations.executor"


def init_executor(app):
    if app.config.get("POST_COMMIT_MODE") == "thread":
        app.extensions[EXECUTOR_KEY] = ThreadPoolExecutor(
            max_workers=int(app.config.get("POST_COMMIT_WORKERS", 2)),
            thread_name_prefix="post-commit",
        )
        atexit.register(shutdown_executor, app)


def shutdown_executor(app, wait=True):
    """Stop taking tasks and, by default, let the queued ones finish."""
    executor = app.extensions.pop(EXECUTOR_KEY, None)
    if executor is not None:
        executor.shutdown(wait=wait)


def _run_task(app, func, args):
    with app.app_context():
        try:
            func(*args)
        except Exception:
            logger.exception("Post-commit task %s%r failed", getattr(func, "__name__", func), args)


class PostCommitTasks:
    """Collects callables during a request and runs them once it has committed.

    Each task gets its own app context. Failures are logged and never reach
    the request that scheduled them.
    """

    def __init__(self):
        self._tasks = []

    def add(self, func, *args):
        self._tasks.append((func, args))

    def __len__(self):
        return len(self._tasks)

    def run(self, app):
        tasks, self._tasks = self._tasks, []
        executor = app.extensions.get(EXECUTOR_KEY)
        for func, args in tasks:
            if executor is None:
                _run_task(app, func, args)
            else:
                executor.submit(_run_task, app, func, args)
