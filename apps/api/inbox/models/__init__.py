from __future__ import annotations

from inbox.models.base import Base as Base  # noqa: F401
from inbox.models.crm import (  # noqa: F401
    Contact,
    Conversation,
    Lead,
    Message,
    MessageStatusEvent,
    Task,
)
from inbox.models.enums import (  # noqa: F401
    Channel,
    ConversationStatus,
    InboundProcessingStatus,
    JobStatus,
    LeadStage,
    MessageDirection,
    MessageStatus,
    OutboundLogStatus,
    ReplyType,
    TaskStatus,
)
from inbox.models.ingest import ExternalEventLog, InboundMessageDedup  # noqa: F401
from inbox.models.jobs import OutboundJob  # noqa: F401
from inbox.models.outbound import OutboundMessageLog  # noqa: F401
