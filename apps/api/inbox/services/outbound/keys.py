from __future__ import annotations

import hashlib
import re
from datetime import UTC, datetime
from uuid import UUID

import orjson

from inbox.models.enums import ReplyType

FLOW_REPLY_TYPES = frozenset({ReplyType.question, ReplyType.greeting, ReplyType.followup, ReplyType.reminder})

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_outbound_text(raw: str) -> str:
    """Unwrap ``{"reply": "..."}`` payloads some generators return and trim."""
    candidate = (raw or "").strip()
    if candidate.startswith("{") and candidate.endswith("}"):
        try:
            parsed = orjson.loads(candidate)
        except orjson.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            inner = parsed.get("reply", parsed.get("reply_text"))
            if isinstance(inner, str):
                candidate = inner.strip()
    return candidate


def normalize_question_key(question_key: str) -> str:
    return _WHITESPACE_RE.sub("_", question_key.strip().lower())


def text_hash(text: str) -> str:
    collapsed = _WHITESPACE_RE.sub(" ", text.strip().lower())
    return hashlib.sha256(collapsed.encode("utf-8")).hexdigest()


def day_bucket(now: datetime | None = None) -> str:
    return (now or datetime.now(UTC)).astimezone(UTC).strftime("%Y-%m-%d")


def is_flow_reply(*, reply_type: str, question_key: str | None, trigger_provider_message_id: str | None) -> bool:
    if not trigger_provider_message_id:
        return True
    return reply_type in FLOW_REPLY_TYPES and bool(question_key)


def outbound_dedupe_key(
    *,
    conversation_id: UUID,
    reply_type: str,
    text: str,
    question_key: str | None = None,
    trigger_provider_message_id: str | None = None,
    now: datetime | None = None,
) -> str:
    """Deterministic ledger key for one logical reply.

    Flow replies (a question/greeting/followup/reminder step, or anything sent
    without a triggering inbound id) are keyed per conversation, step and UTC
    day, so a step is asked at most once a day. Direct answers are keyed on
    the triggering inbound message and the reply text.
    """
    if is_flow_reply(
        reply_type=reply_type,
        question_key=question_key,
        trigger_provider_message_id=trigger_provider_message_id,
    ):
        parts = [
            str(conversation_id),
            reply_type,
            normalize_question_key(question_key or ""),
            day_bucket(now),
        ]
    else:
        parts = [str(conversation_id), trigger_provider_message_id or "", text_hash(text)]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
