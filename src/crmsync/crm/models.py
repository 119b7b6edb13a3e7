"""CRM persistence models.

Six SQLAlchemy models on the shared declarative Base:
- OrganizationModel: Normalized employer records, optionally linked to a Pipedrive organization
- ContactModel: People we work with, optionally linked to a Pipedrive person
- CampaignModel: Outreach campaigns; the shortcode prefixes replicated activity subjects
- campaign_contacts: Many-to-many association between campaigns and contacts
- ActivityModel: Logged interactions, replicated once to Pipedrive
- SyncHistoryModel: One row per bulk sync run
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.crmsync.core.database import Base

campaign_contacts = Table(
    "campaign_contacts",
    Base.metadata,
    Column("campaign_id", UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), primary_key=True),
    Column("contact_id", UUID(as_uuid=True), ForeignKey("contacts.id", ondelete="CASCADE"), primary_key=True),
)


class OrganizationModel(Base):
    """Employer organization shared by many contacts.

    normalized_name is the de-duplication key; remote_org_id is unique when set.
    """

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    remote_org_id: Mapped[str | None] = mapped_column(String(50), nullable=True, unique=True)
    industry: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size: Mapped[str | None] = mapped_column(String(50), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    update_sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_remote_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ContactModel(Base):
    """A person tracked locally, optionally linked to a Pipedrive person."""

    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_remote_person_id", "remote_person_id", unique=True),
        Index("ix_contacts_is_active", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organisation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    warmness_score: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    last_contacted: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    added_to_campaign: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    remote_person_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remote_org_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_remote_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    update_sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )

    organization: Mapped[OrganizationModel | None] = relationship(lazy="selectin")
    campaigns: Mapped[list[CampaignModel]] = relationship(
        secondary=campaign_contacts,
        lazy="selectin",
    )


class CampaignModel(Base):
    """Outreach campaign."""

    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    shortcode: Mapped[str | None] = mapped_column(String(10), nullable=True, unique=True)
    sector: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="PLANNED", server_default=text("'PLANNED'"))
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ActivityModel(Base):
    """Logged interaction with a contact."""

    __tablename__ = "activities"
    __table_args__ = (
        Index("ix_activities_contact_due", "contact_id", "due_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
    )
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("campaigns.id", ondelete="SET NULL"),
        nullable=True,
    )
    replicated_to_pipedrive: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    remote_activity_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pipedrive_sync_attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    last_pipedrive_sync_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    update_sync_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_remote_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_system_activity: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    system_action: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncHistoryModel(Base):
    """Bookkeeping for one bulk sync run."""

    __tablename__ = "sync_history"
    __table_args__ = (
        Index("ix_sync_history_user_started", "user_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    total_contacts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_processed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_updated: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_failed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
