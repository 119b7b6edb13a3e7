"""Initial schema: users, organizations, contacts, campaigns, activities, sync history.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        _id_column(),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("hashed_password", sa.String(255), nullable=True),
        sa.Column("role", sa.String(50), server_default=sa.text("'member'"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("pipedrive_api_key", sa.String(255), nullable=True),
        sa.Column("pipedrive_user_id", sa.Integer(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "organizations",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("normalized_name", sa.String(255), unique=True, nullable=False),
        sa.Column("remote_org_id", sa.String(50), unique=True, nullable=True),
        sa.Column("industry", sa.String(100), nullable=True),
        sa.Column("size", sa.String(50), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("contact_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("update_sync_status", sa.String(20), nullable=True),
        sa.Column("last_remote_update", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "contacts",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("organisation", sa.String(255), nullable=True),
        sa.Column(
            "organization_id",
            UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("warmness_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_contacted", sa.DateTime(timezone=True), nullable=True),
        sa.Column("added_to_campaign", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_by", sa.String(100), nullable=True),
        sa.Column("deactivation_reason", sa.Text(), nullable=True),
        sa.Column("remote_person_id", sa.String(50), nullable=True),
        sa.Column("remote_org_id", sa.String(50), nullable=True),
        sa.Column("last_remote_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("update_sync_status", sa.String(20), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_contacts_remote_person_id", "contacts", ["remote_person_id"], unique=True)
    op.create_index("ix_contacts_is_active", "contacts", ["is_active"])

    op.create_table(
        "campaigns",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("shortcode", sa.String(10), unique=True, nullable=True),
        sa.Column("sector", sa.String(100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), server_default=sa.text("'PLANNED'"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "campaign_contacts",
        sa.Column(
            "campaign_id",
            UUID(as_uuid=True),
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )

    op.create_table(
        "activities",
        _id_column(),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("subject", sa.String(255), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "campaign_id",
            UUID(as_uuid=True),
            sa.ForeignKey("campaigns.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("replicated_to_pipedrive", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("remote_activity_id", sa.String(50), nullable=True),
        sa.Column("pipedrive_sync_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_pipedrive_sync_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("update_sync_status", sa.String(20), nullable=True),
        sa.Column("last_remote_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_system_activity", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("system_action", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_activities_contact_due", "activities", ["contact_id", "due_date"])

    op.create_table(
        "sync_history",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("total_contacts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_updated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_history_user_started", "sync_history", ["user_id", "started_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_history_user_started", table_name="sync_history")
    op.drop_table("sync_history")
    op.drop_index("ix_activities_contact_due", table_name="activities")
    op.drop_table("activities")
    op.drop_table("campaign_contacts")
    op.drop_table("campaigns")
    op.drop_index("ix_contacts_is_active", table_name="contacts")
    op.drop_index("ix_contacts_remote_person_id", table_name="contacts")
    op.drop_table("contacts")
    op.drop_table("organizations")
    op.drop_table("users")
