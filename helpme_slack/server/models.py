"""Pydantic request/response models for the HTTP endpoints.

WHY: The legacy token-injection endpoint needs strict body validation, and
the health/ack responses should show up with a schema in /docs.

HOW: One model per body. Field names for the legacy payload match the
camelCase JSON the HelpMe web app already sends.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Legacy payload fields must be non-empty strings
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class LegacyLinkPayload(BaseModel):
    """Body of POST /link/callback (direct token injection)."""

    teamId: str = Field(min_length=1, description="Slack team (workspace) ID.")
    userId: str = Field(min_length=1, description="Slack user ID.")
    helpmeUserToken: str = Field(min_length=1, description="HelpMe chat token for the user.")


class OkResponse(BaseModel):
    ok: bool = Field(default=True, description="Always true on success.")


class ErrorBody(BaseModel):
    """Error body for the legacy endpoint: UNAUTHORIZED or INVALID."""

    error: str = Field(description="Machine-readable error code.", json_schema_extra={"example": "INVALID"})
