from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.core.config import Settings
from inbox.models.crm import Contact, Conversation, Message
from inbox.models.enums import Channel, ReplyType
from inbox.services.channels.meta import ChannelClient, PermanentSendError
from inbox.services.ingest.phone import PhoneNormalizationError, normalize_phone
from inbox.services.outbound.keys import normalize_outbound_text
from inbox.services.outbound.sender import OutboundSendRequest, send_outbound
from inbox.services.replies import ReplyContext, ReplyGenerator, ReplyGeneratorError
from inbox.services.tasks import create_follow_up_task
from inbox.worker.errors import PermanentJobError

ChannelClientFactory = Callable[[str], ChannelClient]


@dataclass(frozen=True)
class JobOutcome:
    skip_reason: str | None = None
    was_duplicate: bool = False
    outbound_message_id: UUID | None = None


def process_outbound_job(
    *,
    session: Session,
    job: dict,
    reply_generator: ReplyGenerator,
    client_for: ChannelClientFactory,
    settings: Settings,
) -> JobOutcome:
    job_id = UUID(str(job["id"]))
    conversation = session.get(Conversation, UUID(str(job["conversation_id"])))
    inbound = session.get(Message, UUID(str(job["inbound_message_id"])))
    if conversation is None or inbound is None:
        raise PermanentJobError("conversation or inbound message no longer exists", task_type="job_orphaned")
    contact = session.get(Contact, conversation.contact_id)
    if contact is None:
        raise PermanentJobError("contact no longer exists", task_type="job_orphaned")

    if conversation.assigned_user_id:
        return JobOutcome(skip_reason="assigned")

    try:
        reply = reply_generator.generate_reply(
            ReplyContext(
                conversation_id=conversation.id,
                lead_id=conversation.lead_id,
                contact_id=contact.id,
                inbound_text=inbound.body,
                inbound_message_id=inbound.id,
                channel=conversation.channel,
            )
        )
    except ReplyGeneratorError as e:
        if e.permanent:
            raise PermanentJobError(str(e), task_type="reply_generator_failed") from e
        raise

    text = normalize_outbound_text(reply.reply_text)
    if not text:
        return JobOutcome(skip_reason="empty_reply")

    recipient = _recipient(contact=contact, channel=conversation.channel, settings=settings)

    try:
        client = client_for(conversation.channel)
        result = send_outbound(
            session=session,
            client=client,
            request=OutboundSendRequest(
                conversation_id=conversation.id,
                contact_id=contact.id,
                lead_id=conversation.lead_id,
                channel=conversation.channel,
                recipient=recipient,
                text=text,
                trigger_provider_message_id=job.get("inbound_provider_message_id"),
                reply_type=(ReplyType.question if reply.next_step_key else ReplyType.answer).value,
                question_key=reply.next_step_key,
            ),
            settings=settings,
        )
    except PermanentSendError as e:
        raise PermanentJobError(str(e), task_type="send_rejected") from e

    if reply.should_escalate:
        create_follow_up_task(
            session=session,
            workspace_id=conversation.workspace_id,
            task_type="escalation",
            title=f"Reply needs a human on {conversation.channel}",
            details=inbound.body[:500] or None,
            contact_id=contact.id,
            lead_id=conversation.lead_id,
            conversation_id=conversation.id,
            idempotency_key=f"escalation:{job_id}",
        )

    return JobOutcome(was_duplicate=result.was_duplicate, outbound_message_id=result.message_id)


def _recipient(*, contact: Contact, channel: str, settings: Settings) -> str:
    if Channel(channel).is_phone_based:
        try:
            return normalize_phone(
                contact.phone_normalized or contact.phone,
                default_region=settings.DEFAULT_PHONE_REGION,
            )
        except PhoneNormalizationError as e:
            raise PermanentJobError(str(e), task_type="phone_invalid") from e
    if not contact.provider_user_id:
        raise PermanentJobError(f"contact has no {channel} recipient id", task_type="recipient_missing")
    return contact.provider_user_id
