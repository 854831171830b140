"""add link requests, family links and consent audit log

Revision ID: 9e27b5c3d8a0
Revises: 4d1f0a7c2b91
Create Date: 2026-09-09 16:40:03.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "9e27b5c3d8a0"
down_revision: Union[str, Sequence[str], None] = "4d1f0a7c2b91"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "link_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("link_code", sa.String(length=16), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("guardian_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="INITIATED"),
        sa.Column("relation", sa.String(length=20), nullable=False, server_default="OTHER"),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("email_code_hash", sa.String(length=128), nullable=True),
        sa.Column("verify_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("child_decided_at", sa.DateTime(), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["student_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["guardian_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_link_requests_link_code"), "link_requests", ["link_code"], unique=True)
    op.create_index(op.f("ix_link_requests_student_id"), "link_requests", ["student_id"], unique=False)
    op.create_index(op.f("ix_link_requests_guardian_id"), "link_requests", ["guardian_id"], unique=False)
    op.create_index(op.f("ix_link_requests_status"), "link_requests", ["status"], unique=False)
    op.create_index(op.f("ix_link_requests_expires_at"), "link_requests", ["expires_at"], unique=False)

    op.create_table(
        "family_links",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("guardian_id", sa.Integer(), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("link_request_id", sa.Integer(), nullable=True),
        sa.Column("relation", sa.String(length=20), nullable=False, server_default="OTHER"),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["guardian_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["student_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["link_request_id"], ["link_requests.id"]),
        sa.ForeignKeyConstraint(["revoked_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("guardian_id", "student_id", name="uq_family_links_guardian_student"),
    )
    op.create_index(op.f("ix_family_links_guardian_id"), "family_links", ["guardian_id"], unique=False)
    op.create_index(op.f("ix_family_links_student_id"), "family_links", ["student_id"], unique=False)
    op.create_index(op.f("ix_family_links_is_active"), "family_links", ["is_active"], unique=False)

    op.create_table(
        "consent_audit_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("student_id", sa.Integer(), nullable=True),
        sa.Column("guardian_id", sa.Integer(), nullable=True),
        sa.Column("link_request_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("meta_json", sa.JSON(), nullable=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["student_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["guardian_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["link_request_id"], ["link_requests.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_consent_audit_log_actor_user_id"), "consent_audit_log", ["actor_user_id"], unique=False)
    op.create_index(op.f("ix_consent_audit_log_student_id"), "consent_audit_log", ["student_id"], unique=False)
    op.create_index(op.f("ix_consent_audit_log_guardian_id"), "consent_audit_log", ["guardian_id"], unique=False)
    op.create_index(op.f("ix_consent_audit_log_link_request_id"), "consent_audit_log", ["link_request_id"], unique=False)
    op.create_index(op.f("ix_consent_audit_log_action"), "consent_audit_log", ["action"], unique=False)
    op.create_index(op.f("ix_consent_audit_log_created_at"), "consent_audit_log", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_consent_audit_log_created_at"), table_name="consent_audit_log")
    op.drop_index(op.f("ix_consent_audit_log_action"), table_name="consent_audit_log")
    op.drop_index(op.f("ix_consent_audit_log_link_request_id"), table_name="consent_audit_log")
    op.drop_index(op.f("ix_consent_audit_log_guardian_id"), table_name="consent_audit_log")
    op.drop_index(op.f("ix_consent_audit_log_student_id"), table_name="consent_audit_log")
    op.drop_index(op.f("ix_consent_audit_log_actor_user_id"), table_name="consent_audit_log")
    op.drop_table("consent_audit_log")
    op.drop_index(op.f("ix_family_links_is_active"), table_name="family_links")
    op.drop_index(op.f("ix_family_links_student_id"), table_name="family_links")
    op.drop_index(op.f("ix_family_links_guardian_id"), table_name="family_links")
    op.drop_table("family_links")
    op.drop_index(op.f("ix_link_requests_expires_at"), table_name="link_requests")
    op.drop_index(op.f("ix_link_requests_status"), table_name="link_requests")
    op.drop_index(op.f("ix_link_requests_guardian_id"), table_name="link_requests")
    op.drop_index(op.f("ix_link_requests_student_id"), table_name="link_requests")
    op.drop_index(op.f("ix_link_requests_link_code"), table_name="link_requests")
    op.drop_table("link_requests")
