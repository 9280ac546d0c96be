"""create_sync_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
    """)

    # instagram and whatsapp are non-unique; duplicate rows are merged later.
    op.execute("""
        CREATE TABLE IF NOT EXISTS contacts (
            id TEXT PRIMARY KEY,
            dex_id TEXT UNIQUE,
            first_name TEXT,
            last_name TEXT,
            description TEXT,
            instagram TEXT,
            whatsapp TEXT,
            phones JSONB NOT NULL DEFAULT '[]',
            emails JSONB NOT NULL DEFAULT '[]',
            social_handles JSONB NOT NULL DEFAULT '[]',
            normalized_phones TEXT[] NOT NULL DEFAULT '{}',
            image_url TEXT,
            birthday TEXT,
            last_seen_at TEXT,
            notes TEXT,
            tags JSONB NOT NULL DEFAULT '[]',
            lead_status TEXT,
            connection TEXT,
            sex TEXT,
            location TEXT,
            private_notes TEXT,
            do_not_sync_to_dex BOOLEAN NOT NULL DEFAULT false,
            merged_from JSONB NOT NULL DEFAULT '[]',
            last_synced_at TIMESTAMPTZ,
            last_modified_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            seq BIGSERIAL
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_contacts_instagram ON contacts (instagram)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_contacts_whatsapp ON contacts (whatsapp)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_contacts_normalized_phones"
        " ON contacts USING GIN (normalized_phones)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS chats (
            chat_id TEXT PRIMARY KEY,
            local_chat_id TEXT,
            title TEXT NOT NULL DEFAULT 'Unknown',
            network TEXT NOT NULL DEFAULT 'Unknown',
            account_id TEXT NOT NULL DEFAULT '',
            type TEXT NOT NULL DEFAULT 'single',
            username TEXT,
            username_normalized TEXT,
            phone_number TEXT,
            phone_normalized TEXT,
            email TEXT,
            participant_id TEXT,
            contact_id TEXT,
            contact_matched_at TIMESTAMPTZ,
            contact_override BOOLEAN NOT NULL DEFAULT false,
            last_activity TIMESTAMPTZ,
            unread_count INTEGER NOT NULL DEFAULT 0,
            is_archived BOOLEAN NOT NULL DEFAULT false,
            is_muted BOOLEAN NOT NULL DEFAULT false,
            is_pinned BOOLEAN NOT NULL DEFAULT false,
            is_blocked BOOLEAN NOT NULL DEFAULT false,
            last_synced_at TIMESTAMPTZ,
            last_messages_synced_at TIMESTAMPTZ,
            sync_source TEXT,
            last_message_from TEXT,
            needs_reply BOOLEAN,
            last_message TEXT,
            newest_message_sort_key TEXT,
            oldest_message_sort_key TEXT,
            message_count INTEGER NOT NULL DEFAULT 0,
            has_complete_history BOOLEAN NOT NULL DEFAULT false,
            last_full_sync_at TIMESTAMPTZ,
            CONSTRAINT chk_chats_type CHECK (type IN ('single', 'group'))
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_chats_username_normalized ON chats (username_normalized)"
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_chats_phone_normalized ON chats (phone_normalized)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_chats_contact_id ON chats (contact_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            chat_id TEXT NOT NULL REFERENCES chats (chat_id) ON DELETE CASCADE,
            message_id TEXT NOT NULL,
            text TEXT NOT NULL DEFAULT '',
            timestamp TIMESTAMPTZ NOT NULL,
            sort_key TEXT NOT NULL,
            sender_id TEXT NOT NULL DEFAULT '',
            sender_name TEXT NOT NULL DEFAULT '',
            is_from_user BOOLEAN NOT NULL DEFAULT false,
            is_unread BOOLEAN,
            attachments JSONB NOT NULL DEFAULT '[]',
            reactions JSONB NOT NULL DEFAULT '[]',
            send_status TEXT,
            send_error TEXT,
            pending_id TEXT,
            PRIMARY KEY (chat_id, message_id)
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_pending_id ON messages (chat_id, pending_id)"
        " WHERE pending_id IS NOT NULL"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS messages")
    op.execute("DROP TABLE IF EXISTS chats")
    op.execute("DROP TABLE IF EXISTS contacts")
    op.execute("DROP TABLE IF EXISTS state")
