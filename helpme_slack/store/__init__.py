"""Durable storage for links, link states, courses and the question log.

HOW: CredentialStore (store.py) over SQLAlchemy's async engine, ORM tables
in models.py, AES-256-GCM token encryption in crypto.py.
"""

from helpme_slack.store.crypto import TokenCipher, TokenDecryptionError
from helpme_slack.store.store import (
    Course,
    CourseCache,
    CredentialStore,
    InteractionRecord,
    LinkState,
    QuestionRecord,
    UserLink,
)

__all__ = [
    "Course",
    "CourseCache",
    "CredentialStore",
    "InteractionRecord",
    "LinkState",
    "QuestionRecord",
    "TokenCipher",
    "TokenDecryptionError",
    "UserLink",
]
