"""Initial database schema.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""
import os
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SESSION_TABLE = os.environ.get("SESSION_DB_COLLECTION", "sessions")


def upgrade() -> None:
    auth_method = postgresql.ENUM("oauth", "password", name="auth_method")

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("auth_method_kind", auth_method, nullable=False),
        sa.Column("auth_provider", sa.String(32), nullable=True),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("given_name", sa.String(100), nullable=True),
        sa.Column("family_name", sa.String(100), nullable=True),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("avatar_url", sa.String(1000), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
        sa.UniqueConstraint("auth_provider", "external_id", name="uq_users_provider_external_id"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        SESSION_TABLE,
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(f"ix_{SESSION_TABLE}_expires_at", SESSION_TABLE, ["expires_at"])


def downgrade() -> None:
    op.drop_index(f"ix_{SESSION_TABLE}_expires_at", table_name=SESSION_TABLE)
    op.drop_table(SESSION_TABLE)
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.execute("DROP TYPE auth_method")
