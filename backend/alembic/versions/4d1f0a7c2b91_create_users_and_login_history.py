"""create users, login history and event feed

Revision ID: 4d1f0a7c2b91
Revises:
Create Date: 2026-09-02 10:12:41.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4d1f0a7c2b91"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="student"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pin_hash", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    op.create_index(op.f("ix_users_role"), "users", ["role"], unique=False)

    op.create_table(
        "login_history",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("result", sa.String(length=40), nullable=False),
        sa.Column("attempts_remaining", sa.Integer(), nullable=True),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_login_history_user_id"), "login_history", ["user_id"], unique=False)
    op.create_index(op.f("ix_login_history_email"), "login_history", ["email"], unique=False)
    op.create_index(op.f("ix_login_history_ip"), "login_history", ["ip"], unique=False)
    op.create_index(op.f("ix_login_history_result"), "login_history", ["result"], unique=False)
    op.create_index(op.f("ix_login_history_created_at"), "login_history", ["created_at"], unique=False)

    op.create_table(
        "event_feed",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
        sa.Column("title", sa.String(length=160), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("target_ref", sa.String(length=255), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("target_user_id", sa.Integer(), nullable=False),
        sa.Column("meta_json", sa.JSON(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["target_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_event_feed_event_type"), "event_feed", ["event_type"], unique=False)
    op.create_index(op.f("ix_event_feed_severity"), "event_feed", ["severity"], unique=False)
    op.create_index(op.f("ix_event_feed_actor_user_id"), "event_feed", ["actor_user_id"], unique=False)
    op.create_index(op.f("ix_event_feed_target_user_id"), "event_feed", ["target_user_id"], unique=False)
    op.create_index(op.f("ix_event_feed_is_read"), "event_feed", ["is_read"], unique=False)
    op.create_index(op.f("ix_event_feed_created_at"), "event_feed", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_event_feed_created_at"), table_name="event_feed")
    op.drop_index(op.f("ix_event_feed_is_read"), table_name="event_feed")
    op.drop_index(op.f("ix_event_feed_target_user_id"), table_name="event_feed")
    op.drop_index(op.f("ix_event_feed_actor_user_id"), table_name="event_feed")
    op.drop_index(op.f("ix_event_feed_severity"), table_name="event_feed")
    op.drop_index(op.f("ix_event_feed_event_type"), table_name="event_feed")
    op.drop_table("event_feed")
    op.drop_index(op.f("ix_login_history_created_at"), table_name="login_history")
    op.drop_index(op.f("ix_login_history_result"), table_name="login_history")
    op.drop_index(op.f("ix_login_history_ip"), table_name="login_history")
    op.drop_index(op.f("ix_login_history_email"), table_name="login_history")
    op.drop_index(op.f("ix_login_history_user_id"), table_name="login_history")
    op.drop_table("login_history")
    op.drop_index(op.f("ix_users_role"), table_name="users")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
