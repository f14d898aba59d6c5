from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from journey_engine.db.base import Base


class Journey(Base):
    __tablename__ = "journeys"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT", server_default="DRAFT", index=True)
    nodes_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    edges_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class JourneyEnrollment(Base):
    __tablename__ = "journey_enrollments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    journey_id: Mapped[str] = mapped_column(String(64), ForeignKey("journeys.id"), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", server_default="active")
    current_node_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    completed_nodes_json: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    goal_achieved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    conversion_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    context_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    waiting_for_event: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    waiting_for_event_timeout: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    waiting_for_goal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    goal_node_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    exit_reason: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_journey_enrollments_journey_customer", "journey_id", "customer_id"),
        Index("ix_journey_enrollments_customer_status", "customer_id", "status"),
        Index("ix_journey_enrollments_journey_status", "journey_id", "status"),
    )


class JourneyActivityLog(Base):
    __tablename__ = "journey_activity_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enrollment_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("journey_enrollments.id"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_type: Mapped[str] = mapped_column(String(60), nullable=False)
    data_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_journey_activity_logs_enrollment_sequence", "enrollment_id", "sequence"),
        Index("ix_journey_activity_logs_enrollment_event_type", "enrollment_id", "event_type"),
    )


class JourneyScheduledExecution(Base):
    __tablename__ = "journey_scheduled_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    journey_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    enrollment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    node_id: Mapped[str] = mapped_column(String(120), nullable=False)
    resume_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_journey_scheduled_executions_status_resume_at", "status", "resume_at"),
        Index("ix_journey_scheduled_executions_enrollment_status", "enrollment_id", "status"),
    )


class JourneyCampaignMessage(Base):
    __tablename__ = "journey_campaign_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    journey_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    enrollment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    node_id: Mapped[str] = mapped_column(String(120), nullable=False)
    recipient: Mapped[str] = mapped_column(String(40), nullable=False)
    template_name: Mapped[str] = mapped_column(String(120), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    meta_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
