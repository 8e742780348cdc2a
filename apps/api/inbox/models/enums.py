from __future__ import annotations

import enum


class Channel(enum.StrEnum):
    whatsapp = "whatsapp"
    instagram = "instagram"
    facebook = "facebook"
    facebook_lead = "facebook_lead"

    @property
    def is_phone_based(self) -> bool:
        return self in (Channel.whatsapp, Channel.facebook_lead)


class MessageDirection(enum.StrEnum):
    inbound = "inbound"
    outbound = "outbound"


class MessageStatus(enum.StrEnum):
    received = "received"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


class ConversationStatus(enum.StrEnum):
    open = "open"
    closed = "closed"


class LeadStage(enum.StrEnum):
    new = "new"
    contacted = "contacted"
    qualified = "qualified"
    on_hold = "on_hold"
    won = "won"
    lost = "lost"


class InboundProcessingStatus(enum.StrEnum):
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobStatus(enum.StrEnum):
    queued = "queued"
    running = "running"
    done = "done"
    failed = "failed"


class OutboundLogStatus(enum.StrEnum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class ReplyType(enum.StrEnum):
    greeting = "greeting"
    question = "question"
    answer = "answer"
    followup = "followup"
    reminder = "reminder"
    manual = "manual"


class TaskStatus(enum.StrEnum):
    open = "open"
    done = "done"
