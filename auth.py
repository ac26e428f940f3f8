"""Checking the signed launch parameters the Telegram web app sends."""
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl

from config import get_settings


class InvalidInitData(ValueError):
    pass


@dataclass(frozen=True)
class LaunchUser:
    telegram_id: int
    username: Optional[str]


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()


def sign_init_data(fields: dict[str, str], bot_token: str) -> str:
    """Compute the ``hash`` field for ``fields``; the inverse of verification."""
    data_check = "\n".join(f"{key}={fields[key]}" for key in sorted(fields))
    return hmac.new(
        _secret_key(bot_token), data_check.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_init_data(
    init_data: str,
    bot_token: Optional[str] = None,
    max_age_secs: int = 24 * 3600,
) -> LaunchUser:
    token = bot_token if bot_token is not None else get_settings().bot_token
    if not token:
        raise InvalidInitData("Bot token is not configured")

    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    received = fields.pop("hash", None)
    if not received:
        raise InvalidInitData("Missing signature")
    if not hmac.compare_digest(sign_init_data(fields, token), received):
        raise InvalidInitData("Bad signature")

    try:
        auth_date = int(fields.get("auth_date") or 0)
    except ValueError as exc:
        raise InvalidInitData("Bad auth_date") from exc
    if max_age_secs and time.time() - auth_date > max_age_secs:
        raise InvalidInitData("Launch parameters expired")

    try:
        user = json.loads(fields["user"])
        return LaunchUser(telegram_id=int(user["id"]), username=user.get("username"))
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidInitData("Launch parameters carry no user") from exc
