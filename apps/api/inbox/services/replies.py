from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Protocol
from uuid import UUID

import httpx


@dataclass(frozen=True)
class ReplyContext:
    conversation_id: UUID
    lead_id: UUID | None
    contact_id: UUID
    inbound_text: str
    inbound_message_id: UUID
    channel: str
    language: str | None = None


@dataclass(frozen=True)
class ReplyResult:
    reply_text: str
    next_step_key: str | None = None
    should_escalate: bool = False


class ReplyGeneratorError(RuntimeError):
    def __init__(self, message: str, *, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent


class ReplyGenerator(Protocol):
    def generate_reply(self, context: ReplyContext) -> ReplyResult: ...


class HttpReplyGenerator:
    """POSTs the reply context as JSON and reads back ``ReplyResult`` fields."""

    def __init__(self, client: httpx.Client, *, url: str, token: str = "") -> None:
        self._client = client
        self._url = url
        self._token = token

    def generate_reply(self, context: ReplyContext) -> ReplyResult:
        if not self._url:
            raise ReplyGeneratorError("REPLY_GENERATOR_URL is not configured", permanent=True)

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        body = {k: (str(v) if isinstance(v, UUID) else v) for k, v in asdict(context).items()}
        try:
            res = self._client.post(self._url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ReplyGeneratorError(f"reply generator unreachable: {e}") from e

        if res.status_code >= 500 or res.status_code == 429:
            raise ReplyGeneratorError(f"reply generator returned {res.status_code}")
        if res.status_code >= 400:
            raise ReplyGeneratorError(f"reply generator rejected request: {res.status_code}", permanent=True)

        try:
            payload = res.json()
        except ValueError as e:
            raise ReplyGeneratorError("reply generator returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise ReplyGeneratorError("reply generator returned a non-object body")

        reply_text = payload.get("reply_text")
        if reply_text is None:
            reply_text = payload.get("reply")
        return ReplyResult(
            reply_text=str(reply_text or ""),
            next_step_key=payload.get("next_step_key") or None,
            should_escalate=bool(payload.get("should_escalate", False)),
        )
