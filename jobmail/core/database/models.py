"""
SQLAlchemy Database Models

Stores:
- Per-message pipeline state (email_pipeline)
- Deduplicated job applications with their messages and status history
- Inference cache entries with expiry
"""
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text, JSON, ForeignKey,
    Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone

Base = declarative_base()

PIPELINE_STAGES = ("fetched", "classified", "ready_for_extraction", "extracted", "in_job")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailPipeline(Base):
    """
    One row per (message_id, account_scope): where the message is in the
    pipeline and what each stage decided about it.
    """
    __tablename__ = "email_pipeline"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(500), nullable=False)
    account_scope = Column(String(100), nullable=False, default="default")
    conversation_id = Column(String(500))
    subject = Column(Text, default="")
    sender = Column(String(500), default="")
    received_at = Column(DateTime(timezone=True))
    body_excerpt = Column(Text, default="")

    stage = Column(String(32), nullable=False, default="fetched")
    method = Column(String(32))
    probability = Column(Float, nullable=False, default=0.0)
    needs_review = Column(Boolean, nullable=False, default=False)
    review_reason = Column(String(200))
    exit_reason = Column(String(32))

    # Digest decision
    is_digest = Column(Boolean, nullable=False, default=False)
    digest_reason = Column(String(200))
    digest_confidence = Column(Float)

    # Classification / extraction
    is_job = Column(Boolean)
    employer = Column(String(300))
    role = Column(String(300))
    status = Column(String(32))
    fallback_used = Column(Boolean, nullable=False, default=False)
    confidence_tier = Column(String(16))
    job_id = Column(String(36))
    inherited_from = Column(String(500))

    # Human review
    review_decision = Column(String(32))
    reviewed_by = Column(String(200))
    reviewed_at = Column(DateTime(timezone=True))

    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("message_id", "account_scope", name="uq_email_pipeline_message_account"),
        CheckConstraint(
            "stage IN ('" + "', '".join(PIPELINE_STAGES) + "')",
            name="ck_email_pipeline_stage",
        ),
        Index("idx_email_pipeline_account_review", "account_scope", "needs_review"),
        Index("idx_email_pipeline_conversation", "conversation_id"),
        Index("idx_email_pipeline_job", "job_id"),
    )


class JobApplication(Base):
    """A deduplicated job application. Never deleted, only updated."""
    __tablename__ = "job_applications"

    id = Column(String(36), primary_key=True)
    account_scope = Column(String(100), nullable=False, default="default", index=True)
    employer = Column(String(300))
    employer_key = Column(String(300), index=True)
    role = Column(String(300))
    status = Column(String(32), nullable=False, default="Applied")
    conversation_id = Column(String(500))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    messages = relationship(
        "JobMessage",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobMessage.received_at",
    )
    history = relationship(
        "JobStatusHistory",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobStatusHistory.position",
    )


class JobMessage(Base):
    """Message membership. message_id is unique: a message belongs to at most one job."""
    __tablename__ = "job_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("job_applications.id", ondelete="CASCADE"), nullable=False, index=True)
    message_id = Column(String(500), nullable=False, unique=True)
    received_at = Column(DateTime(timezone=True), nullable=False)

    job = relationship("JobApplication", back_populates="messages")


class JobStatusHistory(Base):
    """Every status observed on a job, including ones that did not advance it."""
    __tablename__ = "job_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("job_applications.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False)
    message_id = Column(String(500), nullable=False)
    observed_at = Column(DateTime(timezone=True), nullable=False)
    applied = Column(Boolean, nullable=False, default=False)

    job = relationship("JobApplication", back_populates="history")


class InferenceCacheEntry(Base):
    """Cached model stage output keyed by sha256 of the normalized inputs."""
    __tablename__ = "inference_cache"

    key = Column(String(64), primary_key=True)
    stage = Column(String(16), nullable=False, index=True)
    value = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
