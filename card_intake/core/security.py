"""Telegram WebApp launch-payload verification.

The mini-app forwards ``Telegram.WebApp.initData`` with every upload. It is a
URL-encoded query string signed by Telegram with a key derived from the bot
token; see https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from urllib.parse import parse_qsl

import structlog

from card_intake.core.errors import AuthenticationFailed

logger = structlog.get_logger()

_KEY_DERIVATION_CONSTANT = b"WebAppData"
_HASH_FIELD = "hash"
_USER_FIELD = "user"

ANONYMOUS_DISPLAY_NAME = "مستخدم"


@dataclass(frozen=True)
class CallerIdentity:
    """Who launched the mini-app. Used for attribution, never as a credential."""

    external_id: str
    display_name: str


def _parse_pairs(raw_payload: str) -> dict[str, str]:
    try:
        pairs = parse_qsl(raw_payload, keep_blank_values=True, strict_parsing=True)
    except ValueError as exc:
        raise AuthenticationFailed() from exc

    fields: dict[str, str] = {}
    for key, value in pairs:
        if key in fields:
            raise AuthenticationFailed()
        fields[key] = value
    return fields


def build_data_check_string(fields: dict[str, str]) -> str:
    """Canonical form Telegram signs: ``key=value`` lines sorted by key."""
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def compute_signature(data_check_string: str, signing_secret: str) -> str:
    secret_key = hmac.new(
        _KEY_DERIVATION_CONSTANT, signing_secret.encode(), hashlib.sha256
    ).digest()
    return hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()


def _identity_from_claim(raw_user: str) -> CallerIdentity:
    try:
        user = json.loads(raw_user)
    except ValueError as exc:
        raise AuthenticationFailed() from exc

    if not isinstance(user, dict) or user.get("id") in (None, ""):
        raise AuthenticationFailed()

    display_name = user.get("username") or user.get("first_name") or ANONYMOUS_DISPLAY_NAME
    return CallerIdentity(external_id=str(user["id"]), display_name=str(display_name))


def verify_launch_payload(raw_payload: str, signing_secret: str) -> CallerIdentity:
    """Verify a WebApp launch payload and return the caller it vouches for.

    Raises:
        AuthenticationFailed: unparseable payload, missing ``hash`` or ``user``,
            signature mismatch, or no signing secret configured.
    """
    if not signing_secret:
        logger.error("Launch payload rejected: no signing secret configured")
        raise AuthenticationFailed()
    if not raw_payload:
        raise AuthenticationFailed()

    fields = _parse_pairs(raw_payload)
    received = fields.pop(_HASH_FIELD, "")
    if not received:
        raise AuthenticationFailed()

    expected = compute_signature(build_data_check_string(fields), signing_secret)
    if not hmac.compare_digest(expected.encode(), received.encode()):
        logger.warning("Launch payload signature mismatch")
        raise AuthenticationFailed()

    raw_user = fields.get(_USER_FIELD)
    if not raw_user:
        raise AuthenticationFailed()
    return _identity_from_claim(raw_user)
