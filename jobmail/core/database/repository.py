"""
Database Repository - SQLAlchemy implementations of the pipeline storage interfaces.

- SqlAlchemyStateStore: classification records and job entities
- SqlInferenceCacheBackend: inference cache entries

Every SQLAlchemyError is rolled back and re-raised as PersistenceFailure.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Set, Tuple
import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from jobmail.core.ai.inference_cache import CacheBackend
from jobmail.core.errors import PersistenceFailure
from jobmail.core.pipeline.models import (
    ClassificationRecord,
    JobEntity,
    JobMember,
    StatusObservation,
)
from jobmail.core.pipeline.state_store import PipelineStateStore
from .models import EmailPipeline, InferenceCacheEntry, JobApplication, JobMessage, JobStatusHistory

logger = logging.getLogger(__name__)

# ClassificationRecord fields stored 1:1 in email_pipeline columns
_RECORD_COLUMNS = (
    "message_id", "conversation_id", "subject", "sender", "received_at", "body_excerpt",
    "stage", "method", "probability", "needs_review", "review_reason", "exit_reason",
    "is_digest", "digest_reason", "digest_confidence",
    "is_job", "employer", "role", "status", "fallback_used", "confidence_tier",
    "job_id", "inherited_from",
    "review_decision", "reviewed_by", "reviewed_at", "updated_at",
)
_DATETIME_COLUMNS = {"received_at", "reviewed_at", "updated_at"}


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sanitize_text(text: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """Strip NUL bytes (rejected by PostgreSQL) and enforce column length."""
    if text is None:
        return None
    sanitized = text.replace("\x00", "")
    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]
    return sanitized


class _SessionMixin:
    session_factory: sessionmaker

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"{operation} failed: {e}")
            raise PersistenceFailure(f"{operation} failed: {e}") from e
        finally:
            session.close()


class SqlAlchemyStateStore(_SessionMixin, PipelineStateStore):
    """PipelineStateStore over the email_pipeline and job_* tables."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Classification records
    # ------------------------------------------------------------------

    def upsert_classification(self, record: ClassificationRecord) -> None:
        with self._session(f"upsert_classification({record.message_id})") as db:
            row = db.execute(
                select(EmailPipeline).where(
                    EmailPipeline.message_id == record.message_id,
                    EmailPipeline.account_scope == record.account,
                )
            ).scalar_one_or_none()
            if row is None:
                row = EmailPipeline(message_id=record.message_id, account_scope=record.account)
                db.add(row)
            self._apply_record(row, record)

    def read_existing_message_ids(self, account: str) -> Set[str]:
        with self._session("read_existing_message_ids") as db:
            rows = db.execute(
                select(EmailPipeline.message_id).where(EmailPipeline.account_scope == account)
            ).scalars()
            return set(rows)

    def get_classification(self, message_id: str, account: str) -> Optional[ClassificationRecord]:
        with self._session(f"get_classification({message_id})") as db:
            row = db.execute(
                select(EmailPipeline).where(
                    EmailPipeline.message_id == message_id,
                    EmailPipeline.account_scope == account,
                )
            ).scalar_one_or_none()
            return self._to_record(row) if row is not None else None

    def list_classifications(self, account: str) -> List[ClassificationRecord]:
        with self._session("list_classifications") as db:
            rows = db.execute(
                select(EmailPipeline)
                .where(EmailPipeline.account_scope == account)
                .order_by(EmailPipeline.received_at, EmailPipeline.id)
            ).scalars().all()
            return [self._to_record(r) for r in rows]

    def list_needs_review(self, account: str) -> List[ClassificationRecord]:
        with self._session("list_needs_review") as db:
            rows = db.execute(
                select(EmailPipeline)
                .where(
                    EmailPipeline.account_scope == account,
                    EmailPipeline.needs_review.is_(True),
                    EmailPipeline.review_decision.is_(None),
                )
                .order_by(EmailPipeline.received_at, EmailPipeline.id)
            ).scalars().all()
            return [self._to_record(r) for r in rows]

    @staticmethod
    def _apply_record(row: EmailPipeline, record: ClassificationRecord) -> None:
        data = record.model_dump(mode="python")
        for column in _RECORD_COLUMNS:
            value = data[column]
            if hasattr(value, "value"):
                value = value.value
            if column in _DATETIME_COLUMNS:
                value = to_utc(value)
            elif isinstance(value, str):
                value = sanitize_text(value)
            setattr(row, column, value)

    @staticmethod
    def _to_record(row: EmailPipeline) -> ClassificationRecord:
        data = {column: getattr(row, column) for column in _RECORD_COLUMNS}
        for column in _DATETIME_COLUMNS:
            data[column] = to_utc(data[column])
        data["account"] = row.account_scope
        return ClassificationRecord(**{k: v for k, v in data.items() if v is not None})

    # ------------------------------------------------------------------
    # Job entities
    # ------------------------------------------------------------------

    def upsert_job_entity(self, entity: JobEntity) -> None:
        with self._session(f"upsert_job_entity({entity.id})") as db:
            row = db.get(JobApplication, entity.id)
            if row is None:
                row = JobApplication(id=entity.id, created_at=to_utc(entity.created_at))
                db.add(row)

            row.account_scope = entity.account
            row.employer = sanitize_text(entity.employer, 300)
            row.employer_key = sanitize_text(entity.employer_key, 300)
            row.role = sanitize_text(entity.role, 300)
            row.status = entity.status.value
            row.conversation_id = entity.conversation_id
            row.updated_at = to_utc(entity.updated_at)

            # Members and history are append-only; add what is not stored yet
            stored_members = {m.message_id for m in row.messages}
            for member in entity.members:
                if member.message_id not in stored_members:
                    row.messages.append(JobMessage(
                        message_id=member.message_id,
                        received_at=to_utc(member.received_at),
                    ))
            for position, observation in enumerate(entity.status_history):
                if position < len(row.history):
                    continue
                row.history.append(JobStatusHistory(
                    position=position,
                    status=observation.status.value,
                    message_id=observation.message_id,
                    observed_at=to_utc(observation.observed_at),
                    applied=observation.applied,
                ))

    def list_job_entities(self, account: str) -> List[JobEntity]:
        with self._session("list_job_entities") as db:
            rows = db.execute(
                select(JobApplication)
                .where(JobApplication.account_scope == account)
                .options(selectinload(JobApplication.messages), selectinload(JobApplication.history))
                .order_by(JobApplication.created_at)
            ).scalars().all()
            return [self._to_entity(r) for r in rows]

    @staticmethod
    def _to_entity(row: JobApplication) -> JobEntity:
        members = sorted(
            (JobMember(message_id=m.message_id, received_at=to_utc(m.received_at)) for m in row.messages),
            key=lambda m: m.received_at,
        )
        history = [
            StatusObservation(
                status=h.status,
                message_id=h.message_id,
                observed_at=to_utc(h.observed_at),
                applied=h.applied,
            )
            for h in sorted(row.history, key=lambda h: h.position)
        ]
        return JobEntity(
            id=row.id,
            account=row.account_scope,
            employer=row.employer,
            employer_key=row.employer_key,
            role=row.role,
            status=row.status,
            conversation_id=row.conversation_id,
            members=members,
            status_history=history,
            created_at=to_utc(row.created_at),
            updated_at=to_utc(row.updated_at),
        )


class SqlInferenceCacheBackend(_SessionMixin, CacheBackend):
    """Inference cache entries in the inference_cache table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[Tuple[str, dict, datetime]]:
        with self._session("cache get") as db:
            row = db.get(InferenceCacheEntry, key)
            if row is None:
                return None
            return row.stage, dict(row.value), to_utc(row.expires_at)

    def put(self, key: str, stage: str, value: dict, expires_at: datetime) -> None:
        with self._session("cache put") as db:
            row = db.get(InferenceCacheEntry, key)
            if row is None:
                row = InferenceCacheEntry(key=key, stage=stage)
                db.add(row)
            row.value = value
            row.expires_at = to_utc(expires_at)

    def delete(self, key: str) -> None:
        with self._session("cache delete") as db:
            db.execute(delete(InferenceCacheEntry).where(InferenceCacheEntry.key == key))

    def delete_expired(self, now: datetime) -> int:
        with self._session("cache delete_expired") as db:
            result = db.execute(
                delete(InferenceCacheEntry).where(InferenceCacheEntry.expires_at <= to_utc(now))
            )
            return result.rowcount or 0

    def clear(self, stage: Optional[str] = None) -> int:
        with self._session("cache clear") as db:
            statement = delete(InferenceCacheEntry)
            if stage:
                statement = statement.where(InferenceCacheEntry.stage == stage)
            return db.execute(statement).rowcount or 0
