"""CRM inbox schema (contacts, leads, conversations, messages, jobs, ledgers)

Revision ID: 20261018_0900
Revises:
Create Date: 2026-10-18

"""

from __future__ import annotations

from alembic import op

revision = "20261018_0900"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "lead_stage": ("new", "contacted", "qualified", "on_hold", "won", "lost"),
    "conversation_status": ("open", "closed"),
    "message_direction": ("inbound", "outbound"),
    "message_status": ("received", "sent", "delivered", "read", "failed"),
    "task_status": ("open", "done"),
    "inbound_processing_status": ("processing", "completed", "failed"),
    "outbound_job_status": ("queued", "running", "done", "failed"),
    "outbound_log_status": ("pending", "sent", "failed"),
}


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    for name, values in _ENUMS.items():
        labels = ",".join(f"'{v}'" for v in values)
        op.execute(
            f"""
DO $$ BEGIN
  CREATE TYPE {name} AS ENUM ({labels});
EXCEPTION WHEN duplicate_object THEN NULL; END $$;
"""
        )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS contacts (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id text NOT NULL,
  full_name text NOT NULL DEFAULT 'Unknown',
  phone text NOT NULL,
  phone_normalized text,
  wa_id text,
  provider_channel text,
  provider_user_id text,
  email text,
  source text,
  merged_into_id uuid REFERENCES contacts(id) ON DELETE SET NULL,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    # Identity keys only bind active (non-merged) contacts.
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS contacts_phone_normalized_uq
  ON contacts (workspace_id, phone_normalized)
  WHERE phone_normalized IS NOT NULL AND merged_into_id IS NULL;
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS contacts_provider_user_uq
  ON contacts (workspace_id, provider_channel, provider_user_id)
  WHERE provider_user_id IS NOT NULL AND merged_into_id IS NULL;
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS contacts_raw_phone_uq
  ON contacts (workspace_id, phone)
  WHERE phone_normalized IS NULL AND merged_into_id IS NULL;
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS contacts_wa_id_idx ON contacts (workspace_id, wa_id);")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS leads (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id text NOT NULL,
  contact_id uuid NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
  stage lead_stage NOT NULL DEFAULT 'new',
  last_contact_channel text,
  last_inbound_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS leads_contact_idx ON leads (contact_id, created_at DESC);")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS conversations (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id text NOT NULL,
  contact_id uuid NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
  lead_id uuid REFERENCES leads(id) ON DELETE SET NULL,
  channel text NOT NULL,
  status conversation_status NOT NULL DEFAULT 'open',
  assigned_user_id text,
  unread_count integer NOT NULL DEFAULT 0,
  last_message_at timestamptz,
  last_inbound_at timestamptz,
  last_outbound_at timestamptz,
  deleted_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS conversations_contact_channel_uq
  ON conversations (workspace_id, contact_id, channel);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS messages (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id text NOT NULL,
  conversation_id uuid NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
  contact_id uuid NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
  lead_id uuid REFERENCES leads(id) ON DELETE SET NULL,
  direction message_direction NOT NULL,
  channel text NOT NULL,
  message_type text NOT NULL DEFAULT 'text',
  body text NOT NULL DEFAULT '',
  provider_message_id text,
  status message_status NOT NULL,
  attachments jsonb NOT NULL DEFAULT '[]'::jsonb,
  sent_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS messages_inbound_provider_uq
  ON messages (conversation_id, provider_message_id)
  WHERE direction = 'inbound';
"""
    )
    op.execute(
        """
CREATE INDEX IF NOT EXISTS messages_outbound_provider_idx
  ON messages (channel, provider_message_id)
  WHERE direction = 'outbound';
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS messages_conversation_idx ON messages (conversation_id, created_at DESC);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS message_status_events (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  message_id uuid NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
  conversation_id uuid NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
  status message_status NOT NULL,
  provider_status text NOT NULL,
  error_message text,
  raw_payload jsonb NOT NULL DEFAULT '{}'::jsonb,
  created_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (message_id, status)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS inbound_message_dedup (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  channel text NOT NULL,
  provider_message_id text NOT NULL,
  conversation_id uuid REFERENCES conversations(id) ON DELETE SET NULL,
  processing_status inbound_processing_status NOT NULL DEFAULT 'processing',
  error text,
  processed_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (channel, provider_message_id)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS external_event_logs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  channel text NOT NULL,
  reason text NOT NULL,
  payload text NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS external_event_logs_created_idx ON external_event_logs (created_at DESC);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS outbound_jobs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id text NOT NULL,
  conversation_id uuid NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
  inbound_message_id uuid NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
  inbound_provider_message_id text,
  status outbound_job_status NOT NULL DEFAULT 'queued',
  run_at timestamptz NOT NULL DEFAULT now(),
  attempts integer NOT NULL DEFAULT 0,
  max_attempts integer NOT NULL DEFAULT 3,
  started_at timestamptz,
  completed_at timestamptz,
  locked_by text,
  last_error text,
  skip_reason text,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (inbound_message_id)
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS outbound_jobs_due_idx ON outbound_jobs (status, run_at);")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS outbound_message_logs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  outbound_dedupe_key text NOT NULL,
  channel text NOT NULL,
  conversation_id uuid NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
  trigger_provider_message_id text,
  reply_type text,
  question_key text,
  day_bucket text NOT NULL,
  text_hash text NOT NULL,
  status outbound_log_status NOT NULL DEFAULT 'pending',
  attempts integer NOT NULL DEFAULT 1,
  provider_message_id text,
  error text,
  sent_at timestamptz,
  failed_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (outbound_dedupe_key)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS tasks (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id text NOT NULL,
  task_type text NOT NULL,
  title text NOT NULL,
  details text,
  status task_status NOT NULL DEFAULT 'open',
  contact_id uuid REFERENCES contacts(id) ON DELETE SET NULL,
  lead_id uuid REFERENCES leads(id) ON DELETE SET NULL,
  conversation_id uuid REFERENCES conversations(id) ON DELETE SET NULL,
  idempotency_key text NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (idempotency_key)
);
"""
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS tasks CASCADE;")
    op.execute("DROP TABLE IF EXISTS outbound_message_logs CASCADE;")
    op.execute("DROP TABLE IF EXISTS outbound_jobs CASCADE;")
    op.execute("DROP TABLE IF EXISTS external_event_logs CASCADE;")
    op.execute("DROP TABLE IF EXISTS inbound_message_dedup CASCADE;")
    op.execute("DROP TABLE IF EXISTS message_status_events CASCADE;")
    op.execute("DROP TABLE IF EXISTS messages CASCADE;")
    op.execute("DROP TABLE IF EXISTS conversations CASCADE;")
    op.execute("DROP TABLE IF EXISTS leads CASCADE;")
    op.execute("DROP TABLE IF EXISTS contacts CASCADE;")

    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name};")
