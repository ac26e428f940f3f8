"""Turning a free-form message into candidate transactions via Gemini."""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import threading
import time
from typing import Any, Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import get_settings
from errors import (
    CredentialsExhausted,
    ExtractionTimeout,
    ExtractionUnintelligible,
)
from schemas import CandidateIn

logger = logging.getLogger(__name__)

GEMINI_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)
QUOTA_STATUS_CODES = {403, 429}

PROMPT = """
Extract financial transactions from the user's message.
The user usually writes or speaks Uzbek.

Identify every transaction if there are several. For each one determine:
1. "type": "income" (kirim, oldim, tushdi, oylik) or "expense" (chiqim, ishlatdim, ketdi, harajat).
2. "amount": the numeric value as an integer.
3. "description": a short summary of what it is.
4. "category": an optional one or two word category name.

Return a STRICT JSON ARRAY like this:
[
    {"type": "income", "amount": 50000, "description": "Oylik"},
    {"type": "expense", "amount": 20000, "description": "Taksi", "category": "Transport"}
]

If no amounts are present or the message is unclear, return: {"error": "unclear"}
""".strip()


class QuotaExceeded(RuntimeError):
    pass


class CredentialPool:
    """Round-robin over API keys; a key that hits its quota sits out a cooldown."""

    def __init__(
        self,
        keys: list[str],
        cooldown_secs: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.keys = [key for key in keys if key]
        self.cooldown_secs = cooldown_secs
        self._clock = clock
        self._cursor = 0
        self._exhausted_until: dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.keys)

    def is_available(self, key: str) -> bool:
        return self._exhausted_until.get(key, 0.0) <= self._clock()

    def rotation(self) -> list[str]:
        """Available keys for one request, starting after the last one handed out."""
        with self._lock:
            if not self.keys:
                return []
            start = self._cursor % len(self.keys)
            self._cursor = start + 1
            ordered = self.keys[start:] + self.keys[:start]
            return [key for key in ordered if self.is_available(key)]

    def mark_exhausted(self, key: str) -> None:
        with self._lock:
            self._exhausted_until[key] = self._clock() + self.cooldown_secs

    def mark_ok(self, key: str) -> None:
        with self._lock:
            self._exhausted_until.pop(key, None)


def _strip_fences(text: str) -> str:
    return text.replace("```json", "").replace("```", "").strip()


def parse_candidates(text: str) -> list[CandidateIn]:
    """Validate the model's answer; anything unusable is ``ExtractionUnintelligible``."""
    try:
        payload = json.loads(_strip_fences(text or ""))
    except json.JSONDecodeError as exc:
        raise ExtractionUnintelligible("Could not understand the message") from exc

    if isinstance(payload, dict):
        if payload.get("error"):
            raise ExtractionUnintelligible("No amounts found in the message")
        payload = [payload]
    if not isinstance(payload, list):
        raise ExtractionUnintelligible("Could not understand the message")

    candidates: list[CandidateIn] = []
    for item in payload:
        try:
            candidates.append(CandidateIn.model_validate(item))
        except ValidationError:
            logger.warning(f"extraction_candidate_skipped: item={item!r}")
    if not candidates:
        raise ExtractionUnintelligible("No usable transactions in the message")
    return candidates


def _gemini_request(
    key: str, model: str, payload: dict[str, Any], *, timeout: float
) -> str:
    url = GEMINI_URL.format(model=model) + f"?key={key}"
    req = Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            body = json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        if exc.code in QUOTA_STATUS_CODES:
            raise QuotaExceeded(f"Extraction key rejected with {exc.code}") from exc
        raise RuntimeError(f"Extraction service returned {exc.code}") from exc
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError("Failed to reach the extraction service") from exc

    try:
        parts = body["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ExtractionUnintelligible("Empty answer from the extraction service") from exc
    return "".join(part.get("text", "") for part in parts)


class Extractor:
    def __init__(
        self,
        pool: Optional[CredentialPool] = None,
        *,
        model: Optional[str] = None,
        timeout_secs: Optional[float] = None,
        transport: Optional[Callable[[str, dict[str, Any]], str]] = None,
    ) -> None:
        settings = get_settings()
        self.pool = pool if pool is not None else CredentialPool(settings.extraction_keys)
        self.model = model or settings.extraction_model
        self.timeout_secs = (
            timeout_secs if timeout_secs is not None else settings.extraction_timeout_secs
        )
        self._transport = transport or self._default_transport

    def _default_transport(self, key: str, payload: dict[str, Any]) -> str:
        return _gemini_request(key, self.model, payload, timeout=self.timeout_secs)

    @staticmethod
    def build_payload(
        text: Optional[str] = None,
        audio: Optional[bytes] = None,
        mime_type: str = "audio/ogg",
    ) -> dict[str, Any]:
        if not text and not audio:
            raise ValueError("Nothing to extract from")
        parts: list[dict[str, Any]] = [{"text": PROMPT}]
        if text:
            parts.append({"text": text})
        if audio:
            parts.append(
                {
                    "inline_data": {
                        "mime_type": mime_type,
                        "data": base64.b64encode(audio).decode("ascii"),
                    }
                }
            )
        return {"contents": [{"parts": parts}]}

    def _extract_sync(self, payload: dict[str, Any]) -> list[CandidateIn]:
        if not self.pool.keys:
            raise CredentialsExhausted("No extraction keys are configured")
        keys = self.pool.rotation()
        for key in keys:
            try:
                answer = self._transport(key, payload)
            except QuotaExceeded:
                self.pool.mark_exhausted(key)
                logger.warning(f"extraction_key_exhausted: keys={len(self.pool)}")
                continue
            self.pool.mark_ok(key)
            return parse_candidates(answer)
        raise CredentialsExhausted("Every extraction key is out of quota")

    async def extract(
        self,
        text: Optional[str] = None,
        audio: Optional[bytes] = None,
        mime_type: str = "audio/ogg",
    ) -> list[CandidateIn]:
        payload = self.build_payload(text, audio, mime_type)
        try:
            candidates = await asyncio.wait_for(
                asyncio.to_thread(self._extract_sync, payload),
                timeout=self.timeout_secs,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(f"extraction_timeout: after={self.timeout_secs}s")
            raise ExtractionTimeout("The extraction service took too long") from exc
        logger.info(f"extraction_done: candidates={len(candidates)}")
        return candidates
