"""Signed correlation tokens for Slack modal private_metadata.

WHY: The upload modal is opened by one Slack request and submitted by
another. The submit handler needs the team, user, channel and course from
the opening request, and must not trust a value a client could edit.

HOW: The payload is compact JSON plus an "iat" (issued-at) field,
base64url-encoded, followed by "." and a base64url HMAC-SHA256 over the
encoded payload. verify_metadata() recomputes the MAC with
hmac.compare_digest and checks the age.

RULES:
- The key is the process encryption key (32 bytes)
- Tokens older than max_age_s are rejected
- Any malformed, unsigned or tampered token raises Unauthorized
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any

from helpme_slack.core.errors import Unauthorized

# Slack keeps a modal open for at most a few hours in practice
DEFAULT_MAX_AGE_S = 60 * 60


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _mac(key: bytes, body: str) -> str:
    return _b64encode(hmac.new(key, body.encode("ascii"), hashlib.sha256).digest())


def sign_metadata(payload: dict[str, Any], key: bytes, now: float | None = None) -> str:
    data = dict(payload)
    data["iat"] = int(now if now is not None else time.time())
    body = _b64encode(json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{body}.{_mac(key, body)}"


def verify_metadata(
    token: str,
    key: bytes,
    max_age_s: float = DEFAULT_MAX_AGE_S,
    now: float | None = None,
) -> dict[str, Any]:
    """Return the signed payload (without "iat") or raise Unauthorized."""
    body, sep, signature = (token or "").partition(".")
    if not sep or not body or not signature:
        raise Unauthorized("Missing or malformed form metadata")
    if not hmac.compare_digest(signature, _mac(key, body)):
        raise Unauthorized("Form metadata signature does not match")

    try:
        data = json.loads(_b64decode(body))
    except (binascii.Error, ValueError):
        raise Unauthorized("Form metadata is not readable")
    if not isinstance(data, dict) or not isinstance(data.get("iat"), int):
        raise Unauthorized("Form metadata is missing its timestamp")

    current = now if now is not None else time.time()
    if current - data["iat"] > max_age_s:
        raise Unauthorized("This form has expired")

    data.pop("iat")
    return data
