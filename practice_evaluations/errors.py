class EvaluationError(Exception):
    """Base class for errors reported to API callers."""

    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class NotFound(EvaluationError):
    """Resource not found"""

    status_code = 404


class AlreadyUsed(EvaluationError):
    """This access token has already been used"""

    status_code = 400


class Expired(EvaluationError):
    """This access token has expired"""

    status_code = 400


class InvalidAnswers(EvaluationError):
    """The submitted answers could not be read"""

    status_code = 422


class InvalidTransition(EvaluationError):
    """The evaluation cannot move to the requested status"""

    status_code = 409


class NothingToSend(EvaluationError):
    """There is no participant with an access link to notify"""

    status_code = 409


class DeliveryFailed(EvaluationError):
    """No notification could be delivered"""

    status_code = 502


class DependencyUnavailable(EvaluationError):
    """A backing store is unavailable"""

    status_code = 503
