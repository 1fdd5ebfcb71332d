"""link_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Tables:
  - linked_identities: one guild member <-> one game-server account
  - authorization_mappings: server role grant id -> guild role id
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    # Both columns are unique: a member links at most one account and an
    # account is linked to at most one member.
    op.execute("""
        CREATE TABLE IF NOT EXISTS linked_identities (
            local_id BIGINT PRIMARY KEY,
            external_id BIGINT NOT NULL UNIQUE,
            linked_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS authorization_mappings (
            grant_id TEXT PRIMARY KEY,
            local_role_id BIGINT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_authorization_mappings_local_role
            ON authorization_mappings (local_role_id)
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS idx_authorization_mappings_local_role")
    op.execute("DROP TABLE IF EXISTS authorization_mappings")
    op.execute("DROP TABLE IF EXISTS linked_identities")
