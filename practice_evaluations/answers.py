"""Answer payloads.

Submitted answers arrive under several historical key names. They are
normalized once, at the submission boundary, into ``AnswerEntry`` values and
stored in that normalized form.
"""
from dataclasses import dataclass

QUESTION_ID_KEYS = ("question_id", "pregunta_id", "medPreId", "id")
QUESTION_TEXT_KEYS = ("question", "pregunta", "medPrePregunta", "texto")
CLOSED_KEYS = ("value", "respuesta", "answer", "valor", "medResRespuesta")
OPEN_KEYS = ("text", "respuesta_abierta", "texto_libre", "medEncResAbierta")


@dataclass(frozen=True)
class Closed:
    value: str
    kind = "closed"


@dataclass(frozen=True)
class Open:
    text: str
    kind = "open"


@dataclass(frozen=True)
class Both:
    value: str
    text: str
    kind = "both"


@dataclass(frozen=True)
class AnswerEntry:
    question_id: str
    question: str | None
    answer: Closed | Open | Both

    def to_dict(self):
        return {
            "question_id": self.question_id,
            "question": self.question,
            "kind": self.answer.kind,
            "value": getattr(self.answer, "value", None),
            "text": getattr(self.answer, "text", None),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            question_id=data["question_id"],
            question=data.get("question"),
            answer=make_answer(data.get("value"), data.get("text")),
        )


def _first(item, keys):
    for key in keys:
        value = item.get(key)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        value = str(value).strip()
        if value:
            return value
    return None


def make_answer(value, text):
    if value and text:
        return Both(value, text)
    if value:
        return Closed(value)
    if text:
        return Open(text)
    raise ValueError("answer has neither a selected value nor free text")


def normalize_answers(items):
    """Parse a submitted answer list into ``AnswerEntry`` values.

    Raises ``ValueError`` when the payload is not a non-empty list, an entry
    has no question id, or an entry carries no answer at all.
    """
    if not isinstance(items, (list, tuple)) or not items:
        raise ValueError("answers must be a non-empty list")

    entries = []
    for position, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ValueError(f"answer #{position} is not an object")
        question_id = _first(item, QUESTION_ID_KEYS)
        if question_id is None:
            raise ValueError(f"answer #{position} has no question id")
        try:
            answer = make_answer(_first(item, CLOSED_KEYS), _first(item, OPEN_KEYS))
        except ValueError as exc:
            raise ValueError(f"answer #{position}: {exc}") from None
        entries.append(AnswerEntry(question_id, _first(item, QUESTION_TEXT_KEYS), answer))
    return entries


def answer_display(answer):
    if isinstance(answer, Both):
        return f"{answer.value} - {answer.text}"
    if isinstance(answer, Closed):
        return answer.value
    return answer.text
