from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from inbox.core.logs import log_event
from inbox.models.enums import Channel
from inbox.services.ingest.phone import try_normalize_phone

logger = logging.getLogger("inbox.ingest")

UNKNOWN_NAME = "Unknown"


@dataclass(frozen=True)
class ContactIdentity:
    """How an inbound sender maps onto a contact row."""

    channel: Channel
    phone: str
    phone_normalized: str | None
    wa_id: str | None = None
    provider_user_id: str | None = None
    full_name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class MergeReport:
    groups: int
    merged_contacts: int
    canonical_ids: list[UUID]


def synthetic_phone_key(channel: Channel, sender_id: str) -> str:
    return f"{channel.value}_id:{sender_id}"


def build_identity(
    *,
    channel: Channel,
    sender_id: str | None,
    sender_phone: str | None,
    sender_name: str | None,
    sender_email: str | None,
    default_region: str,
) -> ContactIdentity:
    if channel.is_phone_based and sender_phone:
        return ContactIdentity(
            channel=channel,
            phone=sender_phone,
            phone_normalized=try_normalize_phone(sender_phone, default_region=default_region),
            wa_id=sender_id if channel == Channel.whatsapp else None,
            full_name=sender_name,
            email=sender_email,
        )
    if not sender_id:
        raise ValueError("inbound event carries neither a phone nor a sender id")
    return ContactIdentity(
        channel=channel,
        phone=synthetic_phone_key(channel, sender_id),
        phone_normalized=None,
        provider_user_id=sender_id,
        full_name=sender_name,
        email=sender_email,
    )


def resolve_contact(*, session: Session, workspace_id: str, identity: ContactIdentity) -> UUID:
    """Find or create the contact for ``identity`` and lock its row.

    The row lock is held until the caller's transaction ends, so concurrent
    deliveries for the same sender are processed one at a time.
    """
    contact_id = _find_contact(session=session, workspace_id=workspace_id, identity=identity)
    if contact_id is None:
        contact_id = _insert_contact(session=session, workspace_id=workspace_id, identity=identity)
    if contact_id is None:
        # Lost an insert race; the winner's row is committed by now.
        contact_id = _find_contact(session=session, workspace_id=workspace_id, identity=identity)
    if contact_id is None:
        raise RuntimeError("contact vanished after conflicting insert")

    session.execute(
        text("SELECT id FROM contacts WHERE id = :id FOR UPDATE"),
        {"id": str(contact_id)},
    )
    _enrich_contact(session=session, contact_id=contact_id, identity=identity)
    return contact_id


def _find_contact(*, session: Session, workspace_id: str, identity: ContactIdentity) -> UUID | None:
    lookups: list[tuple[str, dict]] = []
    if identity.phone_normalized:
        lookups.append(("phone_normalized = :v", {"v": identity.phone_normalized}))
    if identity.provider_user_id:
        lookups.append(
            (
                "provider_channel = :ch AND provider_user_id = :v",
                {"ch": identity.channel.value, "v": identity.provider_user_id},
            )
        )
    lookups.append(("phone = :v", {"v": identity.phone}))
    if identity.wa_id:
        lookups.append(("wa_id = :v", {"v": identity.wa_id}))

    for where, params in lookups:
        row = session.execute(
            text(
                f"""
                SELECT id
                FROM contacts
                WHERE workspace_id = :workspace_id
                  AND merged_into_id IS NULL
                  AND {where}
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ),
            {"workspace_id": workspace_id, **params},
        ).fetchone()
        if row is not None:
            return UUID(str(row[0]))
    return None


def _insert_contact(*, session: Session, workspace_id: str, identity: ContactIdentity) -> UUID | None:
    row = session.execute(
        text(
            """
            INSERT INTO contacts (
              workspace_id,
              full_name,
              phone,
              phone_normalized,
              wa_id,
              provider_channel,
              provider_user_id,
              email,
              source,
              created_at,
              updated_at
            )
            VALUES (
              :workspace_id,
              :full_name,
              :phone,
              :phone_normalized,
              :wa_id,
              :provider_channel,
              :provider_user_id,
              :email,
              :source,
              now(),
              now()
            )
            ON CONFLICT DO NOTHING
            RETURNING id
            """
        ),
        {
            "workspace_id": workspace_id,
            "full_name": identity.full_name or UNKNOWN_NAME,
            "phone": identity.phone,
            "phone_normalized": identity.phone_normalized,
            "wa_id": identity.wa_id,
            "provider_channel": identity.channel.value if identity.provider_user_id else None,
            "provider_user_id": identity.provider_user_id,
            "email": identity.email,
            "source": identity.channel.value,
        },
    ).fetchone()
    if row is None:
        return None
    log_event(logger, "contact.created", contact_id=str(row[0]), channel=identity.channel.value)
    return UUID(str(row[0]))


def _enrich_contact(*, session: Session, contact_id: UUID, identity: ContactIdentity) -> None:
    session.execute(
        text(
            """
            UPDATE contacts
            SET full_name = CASE
                  WHEN full_name = :unknown AND CAST(:full_name AS text) IS NOT NULL
                    THEN CAST(:full_name AS text)
                  ELSE full_name
                END,
                wa_id = COALESCE(wa_id, :wa_id),
                email = COALESCE(email, :email),
                updated_at = now()
            WHERE id = :id
            """
        ),
        {
            "id": str(contact_id),
            "unknown": UNKNOWN_NAME,
            "full_name": identity.full_name,
            "wa_id": identity.wa_id,
            "email": identity.email,
        },
    )


def merge_duplicate_contacts(*, session: Session, workspace_id: str, default_region: str) -> MergeReport:
    """Fold contacts that share a phone (after normalization) into the oldest one.

    Foreign keys on leads, conversations, messages and tasks are re-pointed to
    the canonical contact. When both sides hold a conversation on the same
    channel, the duplicate's history is folded into the canonical one and the
    emptied conversation is removed. Caller commits.
    """
    rows = (
        session.execute(
            text(
                """
                SELECT id, phone, phone_normalized
                FROM contacts
                WHERE workspace_id = :workspace_id
                  AND merged_into_id IS NULL
                ORDER BY created_at ASC, id ASC
                FOR UPDATE
                """
            ),
            {"workspace_id": workspace_id},
        )
        .mappings()
        .all()
    )

    groups: dict[str, list[dict]] = defaultdict(list)
    for row in rows:
        key = row["phone_normalized"] or try_normalize_phone(row["phone"], default_region=default_region)
        if key:
            groups[key].append(dict(row))

    merged = 0
    canonical_ids: list[UUID] = []
    for phone_key, members in groups.items():
        if len(members) < 2:
            continue
        canonical = UUID(str(members[0]["id"]))
        for dup in members[1:]:
            _merge_into(session=session, canonical_id=canonical, duplicate_id=UUID(str(dup["id"])))
            merged += 1
        if members[0]["phone_normalized"] is None:
            session.execute(
                text("UPDATE contacts SET phone_normalized = :p, updated_at = now() WHERE id = :id"),
                {"id": str(canonical), "p": phone_key},
            )
        canonical_ids.append(canonical)
        log_event(
            logger,
            "contact.merged",
            canonical_id=str(canonical),
            merged=len(members) - 1,
        )

    return MergeReport(groups=len(canonical_ids), merged_contacts=merged, canonical_ids=canonical_ids)


def _merge_into(*, session: Session, canonical_id: UUID, duplicate_id: UUID) -> None:
    params = {"canonical": str(canonical_id), "dup": str(duplicate_id)}

    colliding = (
        session.execute(
            text(
                """
                SELECT d.id AS dup_conversation_id, c.id AS keep_conversation_id
                FROM conversations d
                JOIN conversations c
                  ON c.workspace_id = d.workspace_id
                 AND c.contact_id = :canonical
                 AND c.channel = d.channel
                WHERE d.contact_id = :dup
                """
            ),
            params,
        )
        .mappings()
        .all()
    )
    for pair in colliding:
        move = {"keep": str(pair["keep_conversation_id"]), "drop": str(pair["dup_conversation_id"])}
        # Inbound rows already present on the surviving side stay where they are.
        session.execute(
            text(
                """
                UPDATE messages m
                SET conversation_id = :keep
                WHERE m.conversation_id = :drop
                  AND NOT (
                    m.direction = 'inbound'
                    AND m.provider_message_id IS NOT NULL
                    AND EXISTS (
                      SELECT 1 FROM messages k
                      WHERE k.conversation_id = :keep
                        AND k.direction = 'inbound'
                        AND k.provider_message_id = m.provider_message_id
                    )
                  )
                """
            ),
            move,
        )
        for table in (
            "message_status_events",
            "outbound_jobs",
            "outbound_message_logs",
            "tasks",
            "inbound_message_dedup",
        ):
            session.execute(
                text(f"UPDATE {table} SET conversation_id = :keep WHERE conversation_id = :drop"),
                move,
            )
        session.execute(
            text(
                """
                UPDATE conversations keep
                SET unread_count = keep.unread_count + d.unread_count,
                    last_message_at = GREATEST(keep.last_message_at, d.last_message_at),
                    last_inbound_at = GREATEST(keep.last_inbound_at, d.last_inbound_at),
                    last_outbound_at = GREATEST(keep.last_outbound_at, d.last_outbound_at),
                    updated_at = now()
                FROM conversations d
                WHERE keep.id = :keep AND d.id = :drop
                """
            ),
            move,
        )
        session.execute(text("DELETE FROM conversations WHERE id = :drop"), move)

    for table in ("conversations", "leads", "messages", "tasks"):
        session.execute(
            text(f"UPDATE {table} SET contact_id = :canonical WHERE contact_id = :dup"),
            params,
        )
    session.execute(
        text(
            """
            UPDATE contacts
            SET merged_into_id = :canonical,
                updated_at = now()
            WHERE id = :dup
            """
        ),
        params,
    )
