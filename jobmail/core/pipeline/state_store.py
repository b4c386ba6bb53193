"""
Pipeline state persistence interface.

The pipeline only talks to PipelineStateStore. InMemoryStateStore backs tests
and embedding; database/repository.py provides the SQLAlchemy implementation.
"""
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, List, Optional, Set, Tuple
import logging

from jobmail.core.errors import PersistenceFailure
from .models import ClassificationRecord, ExitReason, JobEntity

logger = logging.getLogger(__name__)


class PipelineStateStore(ABC):
    """Persistence for classification records and job entities."""

    @abstractmethod
    def upsert_classification(self, record: ClassificationRecord) -> None:
        """Insert or replace the record for (message_id, account)."""
        pass

    @abstractmethod
    def upsert_job_entity(self, entity: JobEntity) -> None:
        """Insert or replace a job entity with its members and status history."""
        pass

    @abstractmethod
    def read_existing_message_ids(self, account: str) -> Set[str]:
        """Message ids that already have a classification record."""
        pass

    @abstractmethod
    def get_classification(self, message_id: str, account: str) -> Optional[ClassificationRecord]:
        pass

    @abstractmethod
    def list_job_entities(self, account: str) -> List[JobEntity]:
        pass

    @abstractmethod
    def list_needs_review(self, account: str) -> List[ClassificationRecord]:
        pass

    def list_failed(self, account: str) -> List[ClassificationRecord]:
        """Records that exited with an error, candidates for an explicit retry."""
        return [
            r for r in self.list_classifications(account)
            if r.exit_reason == ExitReason.ERROR
        ]

    @abstractmethod
    def list_classifications(self, account: str) -> List[ClassificationRecord]:
        pass


class InMemoryStateStore(PipelineStateStore):
    """Dict-backed store. Values are deep-copied in and out so callers never alias stored state."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], ClassificationRecord] = {}
        self._entities: Dict[str, JobEntity] = {}
        self._lock = Lock()

    def upsert_classification(self, record: ClassificationRecord) -> None:
        with self._lock:
            self._records[(record.message_id, record.account)] = record.model_copy(deep=True)

    def upsert_job_entity(self, entity: JobEntity) -> None:
        with self._lock:
            for other in self._entities.values():
                if other.id == entity.id:
                    continue
                shared = set(other.message_ids) & set(entity.message_ids)
                if shared:
                    # Same constraint the job_messages table enforces
                    raise PersistenceFailure(
                        f"Messages {sorted(shared)} already belong to job {other.id}"
                    )
            self._entities[entity.id] = entity.model_copy(deep=True)

    def read_existing_message_ids(self, account: str) -> Set[str]:
        with self._lock:
            return {mid for (mid, acct) in self._records if acct == account}

    def get_classification(self, message_id: str, account: str) -> Optional[ClassificationRecord]:
        with self._lock:
            record = self._records.get((message_id, account))
            return record.model_copy(deep=True) if record else None

    def list_classifications(self, account: str) -> List[ClassificationRecord]:
        with self._lock:
            records = [r.model_copy(deep=True) for (_, acct), r in self._records.items() if acct == account]
        return sorted(records, key=lambda r: (r.received_at is None, r.received_at or r.updated_at))

    def list_job_entities(self, account: str) -> List[JobEntity]:
        with self._lock:
            entities = [e.model_copy(deep=True) for e in self._entities.values() if e.account == account]
        return sorted(entities, key=lambda e: e.created_at)

    def list_needs_review(self, account: str) -> List[ClassificationRecord]:
        return [r for r in self.list_classifications(account) if r.needs_review and r.review_decision is None]
