"""
Test the job entity registry: atomic create/merge and lookups.
"""
from unittest.mock import patch

import pytest

from jobmail.core.errors import PersistenceFailure
from jobmail.core.pipeline.job_registry import JobRegistry, MessageAlreadyAssigned
from jobmail.core.pipeline.models import ClassificationRecord, JobStatus, PipelineStage

from conftest import ts


class TestJobRegistry:
    @pytest.fixture
    def registry(self, memory_store):
        return JobRegistry(memory_store)

    def test_create_persists_and_indexes(self, registry, memory_store):
        entity = registry.create(
            "m1", ts(1), employer="Acme", role="Data Engineer",
            employer_key="acme", conversation_id="conv-1",
        )

        assert memory_store.list_job_entities("default")[0].id == entity.id
        assert registry.owner_of("m1").id == entity.id
        assert registry.for_conversation("conv-1").id == entity.id
        assert [e.id for e in registry.for_employer("acme")] == [entity.id]
        assert entity.status == JobStatus.APPLIED
        assert registry.stats == {"created": 1, "updated": 0}

    def test_merge_advances_status(self, registry):
        entity = registry.create("m1", ts(1), employer="Acme", employer_key="acme")

        merged = registry.merge_message(entity, "m2", ts(2), JobStatus.INTERVIEW)

        assert merged.message_ids == ["m1", "m2"]
        assert merged.status == JobStatus.INTERVIEW
        assert registry.get(entity.id).status == JobStatus.INTERVIEW
        assert registry.stats["updated"] == 1

    def test_merge_is_idempotent_for_same_entity(self, registry, memory_store):
        entity = registry.create("m1", ts(1))
        registry.merge_message(entity, "m2", ts(2))

        again = registry.merge_message(entity, "m2", ts(2), JobStatus.OFFER)

        assert again.message_ids == ["m1", "m2"]
        assert again.status == JobStatus.APPLIED
        assert registry.stats["updated"] == 1

    def test_message_cannot_join_two_entities(self, registry):
        first = registry.create("m1", ts(1))
        second = registry.create("m2", ts(2))

        with pytest.raises(MessageAlreadyAssigned) as exc_info:
            registry.merge_message(second, "m1", ts(1))

        assert exc_info.value.owner_id == first.id

    def test_failed_write_leaves_registry_unchanged(self, registry, memory_store):
        entity = registry.create("m1", ts(1))

        with patch.object(memory_store, "upsert_job_entity", side_effect=PersistenceFailure("disk full")):
            with pytest.raises(PersistenceFailure):
                registry.merge_message(entity, "m2", ts(2), JobStatus.OFFER)

        assert registry.get(entity.id).message_ids == ["m1"]
        assert registry.get(entity.id).status == JobStatus.APPLIED
        assert registry.owner_of("m2") is None

    def test_update_details_moves_employer_index(self, registry):
        entity = registry.create("m1", ts(1), employer="Acme", employer_key="acme")

        registry.update_details(entity, employer="Globex", employer_key="globex")

        assert registry.for_employer("acme") == []
        assert registry.for_employer("globex")[0].employer == "Globex"

    def test_load_restores_conversation_links(self, memory_store):
        registry = JobRegistry(memory_store)
        entity = registry.create("m1", ts(1), employer_key="acme")
        memory_store.upsert_classification(ClassificationRecord(
            message_id="m1",
            conversation_id="thread-1",
            job_id=entity.id,
            stage=PipelineStage.IN_JOB,
        ))

        reloaded = JobRegistry.load(memory_store)

        assert len(reloaded) == 1
        assert reloaded.for_conversation("thread-1").id == entity.id
        assert reloaded.owner_of("m1").id == entity.id
        assert reloaded.stats == {"created": 0, "updated": 0}

    def test_load_is_account_scoped(self, memory_store):
        JobRegistry(memory_store, account="work").create("m1", ts(1))

        assert len(JobRegistry.load(memory_store, account="personal")) == 0
        assert len(JobRegistry.load(memory_store, account="work")) == 1

    @pytest.mark.asyncio
    async def test_lock_per_key(self, registry):
        assert registry.lock_for("acme") is registry.lock_for("acme")
        assert registry.lock_for("acme") is not registry.lock_for("globex")
