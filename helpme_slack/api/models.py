"""HelpMe backend response dataclasses.

WHY: The HelpMe auth service and the chatbot service return loosely shaped
JSON (camelCase keys, optional fields, settings that are sometimes nested
under "metadata"). Normalising those payloads once at the gateway boundary
keeps every command handler working with the same typed objects.

HOW: Each dataclass has a from_dict() factory that accepts the raw JSON
dict and raises ValueError (or KeyError/TypeError) when a required field is
missing. The gateway turns those into BackendUnavailable, since a payload
we cannot read means the backend is not behaving.

RULES:
- Required fields are read with data[...] so missing keys fail loudly
- Optional fields default to None / empty
- Course ids are always ints
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Course:
    """A course the HelpMe user is enrolled in."""

    id: int
    name: str

    @classmethod
    def from_dict(cls, data: dict) -> Course:
        return cls(id=int(data["id"]), name=str(data.get("name") or data["id"]))


@dataclass(frozen=True)
class ExchangeResult:
    """Identity and chat token returned by the auth code exchange.

    RULES:
    - user_id, email and chat_token are required
    - name falls back to the email when absent
    - courses is empty when the backend omits the list
    """

    user_id: int
    email: str
    name: str
    chat_token: str
    organization_id: int | None = None
    courses: list[Course] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> ExchangeResult:
        chat_token = data["chatToken"]
        if not isinstance(chat_token, str) or not chat_token:
            raise ValueError("exchange response has an empty chatToken")
        org = data.get("organizationId")
        return cls(
            user_id=int(data["userId"]),
            email=str(data["email"]),
            name=str(data.get("name") or data["email"]),
            chat_token=chat_token,
            organization_id=int(org) if org is not None else None,
            courses=[Course.from_dict(c) for c in data.get("courses") or []],
        )


@dataclass(frozen=True)
class SourceDocument:
    """A document the chatbot cited in an answer."""

    name: str
    page: int | None = None
    url: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> SourceDocument:
        metadata = data.get("metadata") or {}
        loc = metadata.get("loc") or {}
        page = loc.get("pageNumber") or data.get("pageNumber")
        return cls(
            name=str(metadata.get("name") or data.get("docName") or "Unknown document"),
            page=int(page) if page is not None else None,
            url=metadata.get("source") or data.get("sourceLink"),
        )


@dataclass(frozen=True)
class AskResponse:
    """Answer from POST /chatbot/{courseId}/ask.

    RULES:
    - answer is required
    - question_id is the backend's external reference for the question
    """

    answer: str
    question_id: str = ""
    interaction_id: int | None = None
    is_previous_question: bool = False
    source_documents: list[SourceDocument] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> AskResponse:
        answer = data["answer"]
        if not isinstance(answer, str):
            raise ValueError("ask response answer is not a string")
        interaction_id = data.get("interactionId")
        return cls(
            answer=answer,
            question_id=str(data.get("questionId") or ""),
            interaction_id=int(interaction_id) if interaction_id is not None else None,
            is_previous_question=bool(data.get("isPreviousQuestion", False)),
            source_documents=[
                SourceDocument.from_dict(d) for d in data.get("sourceDocuments") or []
            ],
        )


# Keys accepted by `/chatbot-settings set key=value`, mapped to backend names
SETTINGS_KEYS = {
    "model": "modelName",
    "modelname": "modelName",
    "temperature": "temperature",
    "topk": "topK",
    "top_k": "topK",
    "similarity": "similarityThresholdDocuments",
    "similaritythreshold": "similarityThresholdDocuments",
    "prompt": "prompt",
}


@dataclass(frozen=True)
class CourseSettings:
    """Chatbot settings for one course.

    WHY: The backend sometimes returns the settings flat and sometimes
    nested under "metadata"; handlers only need the handful of values
    they display.

    HOW: from_dict() looks in "metadata" first, then at the top level.
    Everything else is kept in raw for debugging.
    """

    model_name: str | None = None
    temperature: float | None = None
    top_k: int | None = None
    similarity_threshold: float | None = None
    prompt: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> CourseSettings:
        if not isinstance(data, dict):
            raise ValueError("course settings payload is not an object")
        source = data.get("metadata") if isinstance(data.get("metadata"), dict) else data

        temperature = source.get("temperature")
        top_k = source.get("topK")
        similarity = source.get("similarityThresholdDocuments")
        if similarity is None:
            similarity = source.get("similarityThreshold")

        return cls(
            model_name=source.get("modelName") or source.get("model"),
            temperature=float(temperature) if temperature is not None else None,
            top_k=int(top_k) if top_k is not None else None,
            similarity_threshold=float(similarity) if similarity is not None else None,
            prompt=source.get("prompt"),
            raw=dict(data),
        )


@dataclass(frozen=True)
class ModelInfo:
    """One entry from GET /chatbot/models."""

    key: str
    description: str

    @classmethod
    def list_from_payload(cls, payload: Any) -> list[ModelInfo]:
        """Accept either {key: description} or [{"modelName": ...}, ...]."""
        if isinstance(payload, dict):
            return [cls(key=str(k), description=str(v)) for k, v in payload.items()]
        if isinstance(payload, list):
            models = []
            for item in payload:
                if isinstance(item, dict):
                    key = item.get("modelName") or item.get("name") or item.get("id")
                    if key is None:
                        raise ValueError("model entry has no name")
                    models.append(cls(key=str(key), description=str(item.get("description") or "")))
                else:
                    models.append(cls(key=str(item), description=""))
            return models
        raise ValueError("models payload is neither an object nor a list")
