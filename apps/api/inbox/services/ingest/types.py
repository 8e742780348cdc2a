from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from inbox.models.enums import Channel


@dataclass(frozen=True)
class CanonicalAttachment:
    media_type: str
    media_url: str | None = None
    provider_media_id: str | None = None
    mime_type: str | None = None

    def as_json(self) -> dict[str, str | None]:
        return {
            "media_type": self.media_type,
            "media_url": self.media_url,
            "provider_media_id": self.provider_media_id,
            "mime_type": self.mime_type,
        }


@dataclass(frozen=True)
class CanonicalEvent:
    channel: Channel
    event_type: str  # message|status|lead|other
    provider_message_id: str
    timestamp: datetime
    sender_id: str | None = None
    sender_phone: str | None = None
    sender_name: str | None = None
    sender_email: str | None = None
    text: str = ""
    message_type: str = "text"
    attachments: tuple[CanonicalAttachment, ...] = ()
    # Only set for status receipts.
    status: str | None = None
    status_error: str | None = None
    synthetic_id: bool = False
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or bool(self.attachments)


@dataclass(frozen=True)
class ParseError:
    channel: str
    reason: str
    path: str | None = None


@dataclass(frozen=True)
class NormalizeResult:
    events: list[CanonicalEvent]
    errors: list[ParseError]


@dataclass(frozen=True)
class AdmitResult:
    created: bool
    duplicate: bool
    reply_eligible: bool
    message_id: UUID | None = None
    conversation_id: UUID | None = None
    contact_id: UUID | None = None
    lead_id: UUID | None = None
    skip_reason: str | None = None
