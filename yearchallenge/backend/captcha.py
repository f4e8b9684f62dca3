"""Bot verification for room creation and first-time joins."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class BotCheck(Protocol):
    required: bool

    def verify(self, token: str) -> bool:
        """Return True when the CAPTCHA response token is valid."""


class DisabledBotCheck:
    """Accepts every request; used when no Turnstile secret is configured."""

    required = False

    def verify(self, token: str) -> bool:
        return True


@dataclass
class TurnstileBotCheck:
    secret_key: str
    timeout: float = 10.0
    verify_url: str = TURNSTILE_VERIFY_URL
    required = True

    def verify(self, token: str) -> bool:
        try:
            response = httpx.post(
                self.verify_url,
                data={"secret": self.secret_key, "response": token},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return bool(response.json().get("success"))
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("turnstile_verification_failed", error=str(exc))
            return False


def create_bot_check(secret_key: str | None) -> BotCheck:
    if secret_key:
        return TurnstileBotCheck(secret_key=secret_key)
    return DisabledBotCheck()
