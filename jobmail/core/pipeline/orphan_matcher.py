"""
Orphan job matching.

Messages outside multi-message threads are grouped by employer signal and
matched only against job entities of the same employer, oldest first:
- "Google / Software Engineer" and "Google / SWE" end up in one entity
- a Google message is never compared with an Amazon job
"""
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Dict, List, Optional
import logging

from jobmail.core.ai.models import JobDescriptor
from jobmail.core.email.job_signals import domain_to_company, extract_company_domain, normalize_company
from .cancellation import CancellationToken, run_bounded
from .job_registry import JobRegistry, MessageAlreadyAssigned
from .models import JobEntity, JobStatus

logger = logging.getLogger(__name__)


def employer_key(employer: Optional[str], sender: str = "") -> Optional[str]:
    """
    Normalized employer signal used for grouping.

    Extracted employer name first, else the sender's company domain mapped to
    a name ('jobs@mail.google.com' -> 'google'). None when neither is usable.
    """
    key = normalize_company(employer)
    if key:
        return key
    return normalize_company(domain_to_company(extract_company_domain(sender)))


@dataclass
class OrphanCandidate:
    """An extracted, job-related message waiting for a job entity."""
    message_id: str
    received_at: datetime
    sender: str = ""
    employer: Optional[str] = None
    role: Optional[str] = None
    status: Optional[JobStatus] = None
    conversation_id: Optional[str] = None
    job_id: Optional[str] = None

    @property
    def group_key(self) -> str:
        return employer_key(self.employer, self.sender) or f"message:{self.message_id}"

    @property
    def descriptor(self) -> JobDescriptor:
        return JobDescriptor(employer=self.employer, role=self.role)


class OrphanMatcher:
    """Employer-grouped create-or-merge for orphan messages."""

    def __init__(
        self,
        engine,
        registry: JobRegistry,
        group_concurrency: int = 4,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """
        Args:
            engine: StagedInferenceEngine (only `match` is used)
            registry: Job entity registry for the account
            group_concurrency: Employer groups processed at the same time
            cancel_token: Checked between candidates
        """
        self.engine = engine
        self.registry = registry
        self.group_concurrency = group_concurrency
        self.cancel_token = cancel_token
        self.stats: Dict = {"groups": 0, "comparisons": {}, "created": 0, "merged": 0}

    def group(self, candidates: List[OrphanCandidate]) -> Dict[str, List[OrphanCandidate]]:
        """Bucket candidates by employer signal, each bucket oldest first."""
        groups: Dict[str, List[OrphanCandidate]] = {}
        for candidate in candidates:
            groups.setdefault(candidate.group_key, []).append(candidate)
        for members in groups.values():
            members.sort(key=lambda c: (c.received_at, c.message_id))
        return groups

    async def match_orphans(self, candidates: List[OrphanCandidate]) -> List[JobEntity]:
        """
        Assign every candidate to a job entity, creating entities as needed.

        Sets `job_id` on each assigned candidate.

        Returns:
            Entities created or updated, in creation order
        """
        groups = self.group(candidates)
        self.stats["groups"] += len(groups)
        logger.info(f"Matching {len(candidates)} orphans in {len(groups)} employer groups")

        results = await run_bounded(
            [partial(self._match_group, key, members) for key, members in groups.items()],
            self.group_concurrency,
            self.cancel_token,
        )

        touched: Dict[str, None] = {}
        for ids in results:
            for entity_id in ids or []:
                touched[entity_id] = None
        entities = [self.registry.get(i) for i in touched]
        return sorted((e for e in entities if e is not None), key=lambda e: e.created_at)

    async def _match_group(self, key: str, members: List[OrphanCandidate]) -> List[str]:
        touched: List[str] = []
        comparisons = 0
        async with self.registry.lock_for(key):
            for candidate in members:
                if self.cancel_token is not None and self.cancel_token.is_cancelled:
                    break

                entity, compared = await self._find_entity(key, candidate)
                comparisons += compared
                try:
                    if entity is None:
                        entity = self.registry.create(
                            candidate.message_id,
                            candidate.received_at,
                            employer=candidate.employer,
                            role=candidate.role,
                            status=candidate.status,
                            employer_key=None if key.startswith("message:") else key,
                            conversation_id=candidate.conversation_id,
                        )
                        self.stats["created"] += 1
                    else:
                        entity = self.registry.merge_message(
                            entity, candidate.message_id, candidate.received_at, candidate.status
                        )
                        self.stats["merged"] += 1
                except MessageAlreadyAssigned as e:
                    logger.warning(f"{e}; keeping existing assignment")
                    candidate.job_id = e.owner_id
                    continue

                self.registry.link_conversation(candidate.conversation_id, entity.id)
                candidate.job_id = entity.id
                if entity.id not in touched:
                    touched.append(entity.id)

        self.stats["comparisons"][key] = self.stats["comparisons"].get(key, 0) + comparisons
        logger.debug(f"Group {key}: {len(members)} orphans, {comparisons} comparisons")
        return touched

    async def _find_entity(self, key: str, candidate: OrphanCandidate):
        """Return (entity or None, number of match comparisons made)."""
        owner = self.registry.owner_of(candidate.message_id)
        if owner is not None:
            return owner, 0

        by_conversation = self.registry.for_conversation(candidate.conversation_id)
        if by_conversation is not None:
            return by_conversation, 0

        comparisons = 0
        for entity in self.registry.for_employer(key):
            comparisons += 1
            result = await self.engine.match(
                JobDescriptor(employer=entity.employer, role=entity.role),
                candidate.descriptor,
            )
            if result.same_job:
                logger.info(
                    f"Orphan {candidate.message_id} matches job {entity.id} "
                    f"({entity.employer} / {entity.role})"
                )
                return entity, comparisons
        return None, comparisons
