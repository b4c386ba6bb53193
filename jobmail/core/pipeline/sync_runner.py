"""
Sync orchestration.

One run for one account:
1. Fetch messages, skip ids that already have a classification record
2. Extract plaintext (with raw-format recovery for truncating senders)
3. Drop digests before any inference
4. Group into threads and orphans
5. Threads: classify + extract the representative, members inherit.
   A conversation that already has a job inherits that job's stored result.
6. Orphans: classify + extract each, then employer-grouped matching
7. Persist every record once it reaches a terminal state. A cancelled run
   also keeps orphans that were extracted but not yet matched; the next run
   matches them without classifying again.

Per-message failures become records with exit reason `error`; persistence
failures stop the run and propagate.
"""
from functools import partial
from typing import Callable, Dict, List, Optional, Set, Tuple, Union
import logging

from jobmail.core.ai.confidence import ConfidencePolicy
from jobmail.core.ai.config_loader import PipelineConfig
from jobmail.core.ai.models import ExtractResult
from jobmail.core.ai.preclassifier import FastPreclassifier
from jobmail.core.ai.staged_engine import StagedInferenceEngine
from jobmail.core.email.content_extractor import ContentExtractor
from jobmail.core.email.digest_filter import DigestFilter
from jobmail.core.email.job_signals import clean_position_title, status_hint
from jobmail.core.email.models import ExtractedEmail, RawMessage
from jobmail.core.errors import ExtractionFailure, NoReadableContent
from .cancellation import CancellationToken, run_bounded
from .job_registry import JobRegistry, MessageAlreadyAssigned
from .message_source import DateRange, MessageSource
from .models import (
    ActivityEvent,
    ClassificationMethod,
    ClassificationRecord,
    ConfidenceTier,
    ExitReason,
    JobEntity,
    JobStatus,
    PipelineStage,
    ProgressEvent,
    SyncSummary,
    utcnow,
)
from .orphan_matcher import OrphanCandidate, OrphanMatcher, employer_key
from .state_store import PipelineStateStore
from .thread_grouper import ThreadGroup, ThreadGrouper

logger = logging.getLogger(__name__)

PipelineEvent = Union[ProgressEvent, ActivityEvent]

# Job-relatedness probability when the model path runs without a preclassifier score
_TIER_PROBABILITY = {
    ConfidenceTier.HIGH: 0.95,
    ConfidenceTier.MEDIUM: 0.75,
    ConfidenceTier.LOW: 0.6,
}
_TIER_ORDER = [ConfidenceTier.LOW, ConfidenceTier.MEDIUM, ConfidenceTier.HIGH]
BODY_EXCERPT_CHARS = 1000


class SyncRunner:
    """Runs the extraction pipeline over one message source."""

    def __init__(
        self,
        source: MessageSource,
        store: PipelineStateStore,
        engine: StagedInferenceEngine,
        config: Optional[PipelineConfig] = None,
        extractor: Optional[ContentExtractor] = None,
        digest_filter: Optional[DigestFilter] = None,
        preclassifier: Optional[FastPreclassifier] = None,
        use_preclassifier: bool = True,
        on_event: Optional[Callable[[PipelineEvent], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """
        Args:
            source: Message source for the account
            store: Pipeline state persistence
            engine: Staged inference engine (model or rules-only)
            config: Pipeline config (thresholds, concurrency, batch sizes)
            extractor: Content extractor (built from config if omitted)
            digest_filter: Digest filter (default rules if omitted)
            preclassifier: Fast preclassifier (heuristic mode if omitted)
            use_preclassifier: False sends every non-digest message to the engine
            on_event: Callback for progress and activity events
            cancel_token: Cooperative cancellation for the run
        """
        self.source = source
        self.store = store
        self.engine = engine
        self.config = config or engine.config
        self.account = getattr(source, "account", "default")
        self.policy = ConfidencePolicy.from_config(self.config)
        self.extractor = extractor or ContentExtractor.from_config(self.config)
        self.digest_filter = digest_filter or DigestFilter()
        self.preclassifier = None
        if use_preclassifier:
            self.preclassifier = preclassifier or FastPreclassifier(policy=self.policy)
        self.grouper = ThreadGrouper()
        self.on_event = on_event
        self.cancel_token = cancel_token or CancellationToken()

        self.registry: Optional[JobRegistry] = None
        self.matcher: Optional[OrphanMatcher] = None
        self.summary = SyncSummary()
        self._progress_counts: Dict[str, int] = {}
        self._conversation_records: Dict[str, ClassificationRecord] = {}
        self._unmatched: List[ClassificationRecord] = []

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        query: Optional[str] = None,
        date_range: Optional[DateRange] = None,
        limit: Optional[int] = None,
    ) -> SyncSummary:
        """Process every message not yet recorded for the account."""
        self._activity(f"Fetching messages for {self.account}")
        messages = await self.source.fetch_messages(query, date_range)
        if limit:
            messages = messages[:limit]
        existing = self.store.read_existing_message_ids(self.account)
        return await self._process(messages, existing)

    async def retry_failed(self, message_ids: Optional[List[str]] = None) -> SyncSummary:
        """
        Re-run messages whose records exited with an error.

        Args:
            message_ids: Restrict the retry to these ids (default: all failed)
        """
        failed = {r.message_id for r in self.store.list_failed(self.account)}
        targets = failed & set(message_ids) if message_ids is not None else failed
        if not targets:
            self._activity("No failed messages to retry")
            return SyncSummary()

        self._activity(f"Retrying {len(targets)} failed messages")
        messages = [m for m in await self.source.fetch_messages() if m.message_id in targets]
        missing = targets - {m.message_id for m in messages}
        if missing:
            logger.warning(f"{len(missing)} failed messages are no longer available from the source")
        existing = self.store.read_existing_message_ids(self.account) - targets
        return await self._process(messages, existing)

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------

    async def _process(self, messages: List[RawMessage], existing: Set[str]) -> SyncSummary:
        self.summary = SyncSummary(total=len(messages))
        self._progress_counts = {}
        self.registry = JobRegistry.load(self.store, self.account)
        self.matcher = OrphanMatcher(
            self.engine, self.registry, self.config.group_concurrency, self.cancel_token
        )
        self._load_prior_state()

        fresh: List[RawMessage] = []
        seen: Set[str] = set()
        for raw in messages:
            if raw.message_id in existing or raw.message_id in seen:
                self.summary.skipped_duplicate += 1
                continue
            seen.add(raw.message_id)
            fresh.append(raw)
        self._activity(
            f"{len(fresh)} new messages, {self.summary.skipped_duplicate} already processed"
        )

        extracted = await self._extract_all(fresh)
        if self._cancelled():
            return self._finish()

        kept = self._filter_digests(extracted)
        threads, orphans = self.grouper.group(kept)
        self._activity(f"Found {len(threads)} threads and {len(orphans)} orphan messages")

        await run_bounded(
            [partial(self._process_thread, thread, len(threads)) for thread in threads],
            self.config.group_concurrency,
            self.cancel_token,
        )
        if self._cancelled():
            return self._finish()

        await self._process_orphans(orphans)
        return self._finish()

    async def _extract_all(self, messages: List[RawMessage]) -> List[ExtractedEmail]:
        extracted = []
        for index, raw in enumerate(messages, 1):
            if self._cancelled():
                break
            try:
                extracted.append(await self.extractor.extract_with_recovery(raw, self.source))
            except NoReadableContent as e:
                logger.warning(str(e))
                self._persist(self._failed_record(raw, "no_readable_content"))
            except ExtractionFailure as e:
                logger.warning(f"Extraction failed for {raw.message_id}: {e}")
                self._persist(self._failed_record(raw, f"extraction_failure: {e}"))
            except Exception as e:
                logger.error(f"Unexpected extraction error for {raw.message_id}: {type(e).__name__}: {e}")
                self._persist(self._failed_record(raw, f"{type(e).__name__}: {e}"))
            self._progress("extracting", index, len(messages))
        return extracted

    def _filter_digests(self, emails: List[ExtractedEmail]) -> List[ExtractedEmail]:
        decisions, stats = self.digest_filter.detect_batch(
            (e.subject, e.sender, e.body) for e in emails
        )
        kept = []
        for email, decision in zip(emails, decisions):
            if not decision.is_digest:
                kept.append(email)
                continue
            record = self._new_record(email)
            record.method = ClassificationMethod.DIGEST_FILTER
            record.probability = 0.0
            record.is_job = False
            record.is_digest = True
            record.digest_reason = decision.reason
            record.digest_confidence = decision.confidence
            record.advance(PipelineStage.CLASSIFIED)
            uncertain = not self.policy.is_confident_digest(decision.confidence)
            record.exit(ExitReason.DIGEST, review_reason="uncertain_digest" if uncertain else None)
            self._persist(record)

        if stats.total:
            self._activity(f"Digest filter removed {stats.digests} of {stats.total} messages")
            logger.debug(f"Digest reasons: {stats.by_reason}")
        self._progress("filtering", stats.total, stats.total)
        return kept

    def _load_prior_state(self) -> None:
        """Index stored results by conversation and collect extracted records still waiting for a job."""
        self._conversation_records = {}
        self._unmatched = []
        for record in self.store.list_classifications(self.account):
            if record.job_id and record.conversation_id:
                current = self._conversation_records.get(record.conversation_id)
                if current is None or (current.inherited_from and not record.inherited_from):
                    self._conversation_records[record.conversation_id] = record
            elif record.stage == PipelineStage.EXTRACTED and record.exit_reason is None:
                self._unmatched.append(record)
        if self._unmatched:
            self._activity(f"Resuming job matching for {len(self._unmatched)} extracted messages")

    def _known_conversation(self, conversation_id: Optional[str]) -> Optional[Tuple[JobEntity, ClassificationRecord]]:
        """The job and stored representative result of a conversation seen in an earlier run."""
        entity = self.registry.for_conversation(conversation_id)
        if entity is None:
            return None
        source = self._conversation_records.get(conversation_id)
        if source is None or source.job_id != entity.id:
            return None
        return entity, source

    async def _join_conversation(
        self,
        entity: JobEntity,
        source: ClassificationRecord,
        emails: List[ExtractedEmail],
    ) -> None:
        """Add new messages of a known conversation to its job; they inherit the stored result."""
        assignments: Dict[str, str] = {}
        async with self.registry.lock_for(entity.employer_key or f"thread:{source.conversation_id}"):
            for email in emails:
                hint = status_hint(email.subject, email.body)
                entity = self._merge(entity, email, hint, assignments)

        for email in emails:
            record = self._inherit(source, email)
            record.job_id = assignments.get(email.message_id, entity.id)
            self._persist(record)
        logger.debug(f"Conversation {source.conversation_id}: {len(emails)} new messages joined job {entity.id}")

    async def _process_thread(self, thread: ThreadGroup, total: int) -> None:
        known = self._known_conversation(thread.conversation_id)
        if known is not None:
            await self._join_conversation(*known, thread.messages)
            self._step("threads", total)
            return

        representative = thread.representative
        record, _ = await self._classify(representative)

        if record.exit_reason is None:
            assignments = await self._assign_thread(thread, record)
            record.job_id = assignments.get(representative.message_id)
            record.advance(PipelineStage.IN_JOB)
        else:
            assignments = {}

        self._persist(record)
        for member in thread.members:
            inherited = self._inherit(record, member)
            if member.message_id in assignments:
                inherited.job_id = assignments[member.message_id]
            self._persist(inherited)
        self._step("threads", total)

    async def _assign_thread(self, thread: ThreadGroup, record: ClassificationRecord) -> Dict[str, str]:
        """Create or extend the thread's job entity; members' own status hints go in oldest first."""
        representative = thread.representative
        key = employer_key(record.employer, representative.sender)
        assignments: Dict[str, str] = {}

        async with self.registry.lock_for(key or f"thread:{thread.conversation_id}"):
            entity = (
                self.registry.owner_of(representative.message_id)
                or self.registry.for_conversation(thread.conversation_id)
            )
            if entity is None:
                entity = self.registry.create(
                    representative.message_id,
                    representative.received_at,
                    employer=record.employer,
                    role=record.role,
                    status=record.status,
                    employer_key=key,
                    conversation_id=thread.conversation_id,
                )
                assignments[representative.message_id] = entity.id
            else:
                entity = self._merge(entity, representative, record.status, assignments)

            for member in thread.members:
                hint = status_hint(member.subject, member.body)
                entity = self._merge(entity, member, hint, assignments)
        return assignments

    async def _process_orphans(self, orphans: List[ExtractedEmail]) -> None:
        results = await run_bounded(
            [partial(self._classify_orphan, email, len(orphans)) for email in orphans],
            self.config.group_concurrency,
            self.cancel_token,
        )
        resumed = {r.message_id for r in self._unmatched}
        pending = self._unmatched + [r for r in results if r is not None]
        self._unmatched = []
        if not pending:
            return
        if self._cancelled():
            self._keep_unmatched([r for r in pending if r.message_id not in resumed])
            return

        candidates = [
            OrphanCandidate(
                message_id=record.message_id,
                received_at=record.received_at,
                sender=record.sender,
                employer=record.employer,
                role=record.role,
                status=record.status,
                conversation_id=record.conversation_id,
            )
            for record in pending
        ]
        entities = await self.matcher.match_orphans(candidates)
        self._activity(
            f"Matched {len(candidates)} orphan messages into {len(entities)} jobs "
            f"({sum(self.matcher.stats['comparisons'].values())} comparisons)"
        )

        unmatched = []
        for record, candidate in zip(pending, candidates):
            if candidate.job_id is None:
                if record.message_id not in resumed:
                    unmatched.append(record)
                continue
            record.job_id = candidate.job_id
            record.advance(PipelineStage.IN_JOB)
            self._persist(record)
        if unmatched:
            self._keep_unmatched(unmatched)
        self._progress("matching", len(candidates), len(candidates))

    def _keep_unmatched(self, records: List[ClassificationRecord]) -> None:
        """Store extracted records without a job so the next run matches them without classifying again."""
        if not records:
            return
        for record in records:
            self._persist(record)
        self._activity(f"Kept {len(records)} extracted messages for job matching on the next run", level="warning")

    async def _classify_orphan(self, email: ExtractedEmail, total: int) -> Optional[ClassificationRecord]:
        known = self._known_conversation(email.conversation_id)
        if known is not None:
            await self._join_conversation(*known, [email])
            self._step("orphans", total)
            return None

        record, _ = await self._classify(email)
        self._step("orphans", total)
        if record.exit_reason is not None:
            self._persist(record)
            return None
        return record

    # ------------------------------------------------------------------
    # Per-message classification
    # ------------------------------------------------------------------

    async def _classify(self, email: ExtractedEmail) -> Tuple[ClassificationRecord, Optional[ExtractResult]]:
        """Preclassifier, then model classify and extract. Never raises for per-message failures."""
        record = self._new_record(email)
        try:
            return await self._classify_stages(email, record)
        except Exception as e:
            logger.error(f"Classification failed for {email.message_id}: {type(e).__name__}: {e}")
            record.exit(ExitReason.ERROR, review_reason=f"{type(e).__name__}: {e}"[:200])
            return record, None

    async def _classify_stages(self, email: ExtractedEmail, record: ClassificationRecord):
        pre = None
        if self.preclassifier is not None:
            pre = self.preclassifier.predict(email.subject, email.body, email.sender)
            record.method = ClassificationMethod.FAST_PRECLASSIFIER
            record.probability = pre.probability
            record.advance(PipelineStage.CLASSIFIED)
            if not pre.storable:
                record.is_job = False
                record.exit(ExitReason.LOW_CONFIDENCE, review_reason="low_confidence")
                return record, None
            if pre.needs_review:
                record.needs_review = True
                record.review_reason = "preclassifier_uncertain"

        classified = await self.engine.classify(email.subject, email.body, email.sender)
        record.method = ClassificationMethod.STAGED_MODEL
        record.is_job = classified.is_job
        record.fallback_used = classified.fallback_used
        record.confidence_tier = classified.confidence_tier
        if pre is None:
            tier_probability = _TIER_PROBABILITY[classified.confidence_tier]
            record.probability = tier_probability if classified.is_job else 1.0 - tier_probability
        record.advance(PipelineStage.CLASSIFIED)

        if not classified.is_job:
            disagreement = pre is not None and pre.auto_approve
            record.exit(ExitReason.NOT_JOB, review_reason="classifier_disagreement" if disagreement else None)
            return record, None

        record.advance(PipelineStage.READY_FOR_EXTRACTION)
        extraction = await self.engine.extract(email.subject, email.body, email.sender)
        record.employer = extraction.employer
        record.role = clean_position_title(extraction.role)
        record.status = extraction.status or JobStatus.APPLIED
        record.fallback_used = record.fallback_used or extraction.fallback_used
        record.confidence_tier = min(
            classified.confidence_tier, extraction.confidence_tier, key=_TIER_ORDER.index
        )
        if record.fallback_used and record.confidence_tier == ConfidenceTier.LOW and not record.needs_review:
            record.needs_review = True
            record.review_reason = "fallback_low_confidence"
        record.advance(PipelineStage.EXTRACTED)
        return record, extraction

    # ------------------------------------------------------------------
    # Records and persistence
    # ------------------------------------------------------------------

    def _merge(
        self,
        entity: JobEntity,
        email: ExtractedEmail,
        status: Optional[JobStatus],
        assignments: Dict[str, str],
    ) -> JobEntity:
        try:
            entity = self.registry.merge_message(entity, email.message_id, email.received_at, status)
            assignments[email.message_id] = entity.id
        except MessageAlreadyAssigned as e:
            logger.warning(f"{e}; keeping existing assignment")
            assignments[email.message_id] = e.owner_id
        return entity

    def _new_record(self, email: ExtractedEmail) -> ClassificationRecord:
        return ClassificationRecord(
            message_id=email.message_id,
            account=self.account,
            conversation_id=email.conversation_id,
            subject=email.subject,
            sender=email.sender,
            received_at=email.received_at,
            body_excerpt=email.body[:BODY_EXCERPT_CHARS],
        )

    def _failed_record(self, raw: RawMessage, reason: str) -> ClassificationRecord:
        record = ClassificationRecord(
            message_id=raw.message_id,
            account=self.account,
            conversation_id=raw.conversation_id,
            subject=raw.subject,
            sender=raw.sender,
            received_at=raw.received_at,
            body_excerpt=raw.snippet[:BODY_EXCERPT_CHARS],
        )
        record.exit(ExitReason.ERROR, review_reason=reason[:200])
        return record

    @staticmethod
    def _inherit(record: ClassificationRecord, member: ExtractedEmail) -> ClassificationRecord:
        """Copy the representative's result onto a thread member."""
        return record.model_copy(deep=True, update={
            "message_id": member.message_id,
            "subject": member.subject,
            "sender": member.sender,
            "received_at": member.received_at,
            "body_excerpt": member.body[:BODY_EXCERPT_CHARS],
            "inherited_from": record.inherited_from or record.message_id,
            "review_decision": None,
            "reviewed_by": None,
            "reviewed_at": None,
            "updated_at": utcnow(),
        })

    def _persist(self, record: ClassificationRecord) -> None:
        """Write a terminal record, or an extracted one kept for matching on the next run.

        PersistenceFailure propagates and ends the run.
        """
        self.store.upsert_classification(record)

        summary = self.summary
        if record.exit_reason == ExitReason.DIGEST:
            summary.digest_filtered += 1
        elif record.exit_reason == ExitReason.ERROR:
            summary.errors += 1
        else:
            summary.classified += 1
            if record.exit_reason == ExitReason.NOT_JOB:
                summary.not_job += 1
        if record.needs_review:
            summary.needs_review += 1
        if record.fallback_used:
            summary.fallback_used += 1

    def _finish(self) -> SyncSummary:
        summary = self.summary
        summary.job_entities_created = self.registry.stats["created"]
        summary.job_entities_updated = self.registry.stats["updated"]
        summary.cancelled = self._cancelled()
        level = "warning" if summary.cancelled else "info"
        self._activity(
            f"Sync {'cancelled' if summary.cancelled else 'complete'}: "
            f"{summary.classified} classified, {summary.digest_filtered} digests, "
            f"{summary.needs_review} need review, {summary.errors} errors, "
            f"{summary.job_entities_created} jobs created, {summary.job_entities_updated} updated",
            level=level,
        )
        logger.info(f"Engine stats: {self.engine.stats}")
        return summary

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    def _step(self, stage: str, total: int) -> None:
        done = self._progress_counts.get(stage, 0) + 1
        self._progress_counts[stage] = done
        self._progress(stage, done, total)

    def _progress(self, stage: str, processed: int, total: int) -> None:
        """Emit at batch boundaries and at the end of a phase."""
        if processed != total and processed % self.config.progress_batch_size:
            return
        event = ProgressEvent(stage=stage, processed_count=processed, total_count=total)
        logger.debug(f"Progress {stage}: {processed}/{total}")
        self._emit(event)

    def _activity(self, message: str, level: str = "info") -> None:
        logger.log(logging.WARNING if level == "warning" else logging.INFO, message)
        self._emit(ActivityEvent(message=message, level=level))

    def _emit(self, event: PipelineEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.warning(f"Event callback failed: {e}")
