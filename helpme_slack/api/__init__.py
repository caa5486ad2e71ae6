"""HelpMe backend gateway package.

WHY: Command handlers and the link callback must reach two HelpMe services
(the auth service for the code exchange, the chatbot service for questions
and settings) with the right credentials and a bounded wait.

HOW: HelpMeClient (client.py) wraps httpx.AsyncClient and raises typed
HelpMeAPIError subclasses. Response payloads are normalised into the
dataclasses in models.py.

RULES:
- All backend HTTP goes through HelpMeClient (no direct httpx elsewhere)
- Every request carries the service key; user calls also carry the chat token
"""

from helpme_slack.api.client import (
    BackendNotFound,
    BackendQuotaExceeded,
    BackendRejected,
    BackendUnauthorized,
    BackendUnavailable,
    BackendValidationError,
    HelpMeAPIError,
    HelpMeClient,
)
from helpme_slack.api.models import AskResponse, Course, CourseSettings, ExchangeResult, ModelInfo

__all__ = [
    "AskResponse",
    "BackendNotFound",
    "BackendQuotaExceeded",
    "BackendRejected",
    "BackendUnauthorized",
    "BackendUnavailable",
    "BackendValidationError",
    "Course",
    "CourseSettings",
    "ExchangeResult",
    "HelpMeAPIError",
    "HelpMeClient",
    "ModelInfo",
]
