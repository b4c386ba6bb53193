"""
Job entity registry.

In-memory index of JobEntities for one account, by id, conversation and
employer key. Every mutation is applied to a copy, persisted, and only then
swapped into the index, so a failed write leaves the registry unchanged.
"""
import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional
import logging

from .models import JobEntity, JobStatus
from .state_store import PipelineStateStore

logger = logging.getLogger(__name__)


class MessageAlreadyAssigned(ValueError):
    """The message is already a member of a different job entity"""

    def __init__(self, message_id: str, owner_id: str):
        super().__init__(f"Message {message_id} already belongs to job {owner_id}")
        self.message_id = message_id
        self.owner_id = owner_id


class JobRegistry:
    """Owns job entities during a sync run."""

    def __init__(self, store: PipelineStateStore, account: str = "default"):
        self.store = store
        self.account = account
        self._entities: Dict[str, JobEntity] = {}
        self._by_conversation: Dict[str, str] = {}
        self._by_employer: Dict[str, List[str]] = defaultdict(list)
        self._owner: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.stats = {"created": 0, "updated": 0}

    @classmethod
    def load(cls, store: PipelineStateStore, account: str = "default") -> "JobRegistry":
        """Build a registry from persisted entities and the conversations their messages came from."""
        registry = cls(store, account)
        for entity in store.list_job_entities(account):
            registry._index(entity)
        for record in store.list_classifications(account):
            if record.conversation_id and record.job_id in registry._entities:
                registry._by_conversation.setdefault(record.conversation_id, record.job_id)
        logger.info(f"JobRegistry loaded {len(registry._entities)} job entities for {account}")
        return registry

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entities)

    def get(self, entity_id: str) -> Optional[JobEntity]:
        return self._entities.get(entity_id)

    def all(self) -> List[JobEntity]:
        return sorted(self._entities.values(), key=lambda e: e.created_at)

    def owner_of(self, message_id: str) -> Optional[JobEntity]:
        entity_id = self._owner.get(message_id)
        return self._entities.get(entity_id) if entity_id else None

    def for_conversation(self, conversation_id: Optional[str]) -> Optional[JobEntity]:
        if not conversation_id:
            return None
        entity_id = self._by_conversation.get(conversation_id)
        return self._entities.get(entity_id) if entity_id else None

    def for_employer(self, employer_key: Optional[str]) -> List[JobEntity]:
        if not employer_key:
            return []
        return [self._entities[i] for i in self._by_employer.get(employer_key, [])]

    def lock_for(self, key: str) -> asyncio.Lock:
        """One lock per employer group; created lazily inside the running loop."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        message_id: str,
        received_at: datetime,
        employer: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[JobStatus] = None,
        employer_key: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> JobEntity:
        """Create and persist a new entity seeded with one message."""
        owner = self._owner.get(message_id)
        if owner:
            raise MessageAlreadyAssigned(message_id, owner)

        entity = JobEntity(
            account=self.account,
            employer=employer,
            employer_key=employer_key,
            role=role,
            conversation_id=conversation_id,
        )
        entity.add_message(message_id, received_at)
        entity.observe_status(status or JobStatus.APPLIED, message_id, received_at)

        self.store.upsert_job_entity(entity)
        self._index(entity)
        self.stats["created"] += 1
        logger.info(f"Created job {entity.id}: {employer or '?'} / {role or '?'} ({entity.status.value})")
        return entity

    def merge_message(
        self,
        entity: JobEntity,
        message_id: str,
        received_at: datetime,
        status: Optional[JobStatus] = None,
    ) -> JobEntity:
        """
        Add a message to an entity and advance its status monotonically.

        Atomic per message: the entity is updated on a copy, persisted, then
        swapped into the registry.

        Raises:
            MessageAlreadyAssigned: If another entity owns the message
            PersistenceFailure: If the store rejects the write
        """
        current = self._entities.get(entity.id, entity)
        owner = self._owner.get(message_id)
        if owner == current.id:
            return current
        if owner:
            raise MessageAlreadyAssigned(message_id, owner)

        updated = current.model_copy(deep=True)
        updated.add_message(message_id, received_at)
        advanced = updated.observe_status(status, message_id, received_at)

        self.store.upsert_job_entity(updated)
        self._index(updated)
        self.stats["updated"] += 1
        logger.debug(
            f"Merged {message_id} into job {updated.id}"
            + (f", status now {updated.status.value}" if advanced else "")
        )
        return updated

    def observe_status(
        self,
        entity: JobEntity,
        status: JobStatus,
        message_id: str,
        observed_at: datetime,
    ) -> JobEntity:
        """Record a status for a message that is already a member."""
        current = self._entities.get(entity.id, entity)
        updated = current.model_copy(deep=True)
        updated.observe_status(status, message_id, observed_at)
        self.store.upsert_job_entity(updated)
        self._index(updated)
        return updated

    def update_details(
        self,
        entity: JobEntity,
        employer: Optional[str] = None,
        role: Optional[str] = None,
        employer_key: Optional[str] = None,
    ) -> JobEntity:
        """Overwrite employer/role from a human correction. Status is untouched."""
        current = self._entities.get(entity.id, entity)
        changes = {k: v for k, v in (("employer", employer), ("role", role), ("employer_key", employer_key)) if v}
        if not changes:
            return current
        updated = current.model_copy(deep=True, update=changes)
        self.store.upsert_job_entity(updated)
        if current.employer_key and employer_key and current.employer_key != employer_key:
            self._by_employer[current.employer_key].remove(current.id)
        self._index(updated)
        self.stats["updated"] += 1
        return updated

    def _index(self, entity: JobEntity) -> None:
        self._entities[entity.id] = entity
        for message_id in entity.message_ids:
            self._owner[message_id] = entity.id
        if entity.conversation_id:
            self._by_conversation.setdefault(entity.conversation_id, entity.id)
        if entity.employer_key and entity.id not in self._by_employer[entity.employer_key]:
            self._by_employer[entity.employer_key].append(entity.id)

    def link_conversation(self, conversation_id: Optional[str], entity_id: str) -> None:
        """Route later messages of a conversation to an entity created from a single message."""
        if conversation_id:
            self._by_conversation.setdefault(conversation_id, entity_id)
