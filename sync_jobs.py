#!/usr/bin/env python3
"""
Job Application Sync - Build job applications from a local mailbox export

Runs the thread-aware extraction pipeline over an mbox file and stores
classification records and deduplicated job applications in the database.
All inference runs against a local model server; without one, rule-based
fallbacks are used.

Usage:
    # Sync a Google Takeout export
    python3 sync_jobs.py --mbox ~/Takeout/Mail/All.mbox

    # Only messages from 2024, first 200
    python3 sync_jobs.py --mbox All.mbox --since 2024-01-01 --until 2024-12-31 --limit 200

    # No model server: rule-based fallbacks only
    python3 sync_jobs.py --mbox All.mbox --rules-only

    # Re-run messages that failed in an earlier sync
    python3 sync_jobs.py --mbox All.mbox --retry-failed

    # Fit the preclassifier from reviewed records
    python3 sync_jobs.py --train-preclassifier

Options:
    --mbox PATH             Mailbox export to read
    --account NAME          Account scope (default: DEFAULT_ACCOUNT)
    --since / --until DATE  Received-date range (YYYY-MM-DD)
    --query TEXT            Only messages whose subject or sender contains TEXT
    --limit N               Process only the first N messages
    --rules-only            Never call the local model
    --skip-preclassifier    Send every non-digest message to the model stages
    --retry-failed          Re-run messages whose last run ended in an error
    --train-preclassifier   Train the preclassifier from review feedback and exit
    --database-url URL      Override DATABASE_URL
    --verbose               Debug logging
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv

# Load environment variables FIRST (before any imports that need them)
load_dotenv()

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)

# Suppress verbose HTTP logging (only show warnings)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.WARNING)

from jobmail.core.config import get_settings
from jobmail.core.errors import ConfigurationError, PersistenceFailure
from jobmail.core.ai.config_loader import load_pipeline_config
from jobmail.core.ai.confidence import ConfidencePolicy
from jobmail.core.ai.inference_cache import InferenceCache
from jobmail.core.ai.preclassifier import FastPreclassifier
from jobmail.core.ai.preclassifier_training import train_preclassifier
from jobmail.core.ai.providers import LocalModelProvider
from jobmail.core.ai.staged_engine import StagedInferenceEngine
from jobmail.core.database import init_db, SqlAlchemyStateStore, SqlInferenceCacheBackend
from jobmail.core.pipeline.cancellation import CancellationToken
from jobmail.core.pipeline.message_source import MboxMessageSource
from jobmail.core.pipeline.review import ReviewService
from jobmail.core.pipeline.sync_runner import SyncRunner

DEFAULT_PRECLASSIFIER_PATH = "preclassifier.joblib"


def parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Extract job applications from a local mailbox export'
    )
    parser.add_argument('--mbox', type=str, default=None,
                        help='Path to the mbox export to process')
    parser.add_argument('--account', type=str, default=None,
                        help='Account scope for stored records (default: DEFAULT_ACCOUNT)')
    parser.add_argument('--since', type=parse_date, default=None,
                        help='Only messages received on or after this date (YYYY-MM-DD)')
    parser.add_argument('--until', type=parse_date, default=None,
                        help='Only messages received before the end of this date (YYYY-MM-DD)')
    parser.add_argument('--query', type=str, default=None,
                        help='Only messages whose subject or sender contains this text')
    parser.add_argument('--limit', type=int, default=None,
                        help='Maximum number of messages to process')
    parser.add_argument('--rules-only', action='store_true',
                        help='Skip the local model and use rule-based fallbacks')
    parser.add_argument('--skip-preclassifier', action='store_true',
                        help='Send every non-digest message to the model stages')
    parser.add_argument('--retry-failed', action='store_true',
                        help='Re-run messages whose previous run ended in an error')
    parser.add_argument('--train-preclassifier', action='store_true',
                        help='Train the preclassifier from human review feedback and exit')
    parser.add_argument('--database-url', type=str, default=None,
                        help='Database URL (overrides DATABASE_URL)')
    parser.add_argument('--verbose', action='store_true',
                        help='Show detailed processing info')
    return parser


def build_engine(settings, config, session_factory, rules_only: bool) -> StagedInferenceEngine:
    cache = InferenceCache(SqlInferenceCacheBackend(session_factory), ttl_days=config.cache_ttl_days)
    provider = None
    if not rules_only and settings.model_enabled:
        provider = LocalModelProvider(
            base_url=settings.ollama_base_url,
            classify_model=settings.classify_model,
            extract_model=settings.extract_model,
        )
    return StagedInferenceEngine(provider, config, cache)


def print_summary(summary, engine: StagedInferenceEngine):
    print(f"\n{'='*60}")
    print(f"📊 SYNC {'CANCELLED' if summary.cancelled else 'COMPLETE'}")
    print(f"{'='*60}")
    print(f"Messages:          {summary.total}")
    print(f"Already processed: {summary.skipped_duplicate}")
    print(f"Digests filtered:  {summary.digest_filtered}")
    print(f"Classified:        {summary.classified} ({summary.not_job} not job-related)")
    print(f"Needs review:      {summary.needs_review}")
    print(f"Errors:            {summary.errors}")
    print(f"Fallback used:     {summary.fallback_used}")
    print(f"Jobs created:      {summary.job_entities_created}")
    print(f"Jobs updated:      {summary.job_entities_updated}")
    print(f"Model calls:       {engine.stats['model_calls']} "
          f"(cache hits: {engine.stats['cache_hits']}, timeouts: {engine.stats['timeouts']})")
    print(f"{'='*60}\n")


def train_command(store, account: str, output_path: str) -> int:
    samples = ReviewService(store, account).export_feedback()
    try:
        bundle = train_preclassifier(samples, output_path=output_path)
    except ValueError as e:
        print(f"❌ Cannot train preclassifier: {e}")
        return 1
    stats = bundle["stats"]
    print(f"✅ Trained preclassifier on {stats['total_samples']} reviewed messages -> {output_path}")
    if stats["accuracy"] is not None:
        print(f"   Holdout accuracy: {stats['accuracy']:.2%}")
    return 0


async def run(args) -> int:
    settings = get_settings()
    account = args.account or settings.default_account

    try:
        config = load_pipeline_config(settings.pipeline_config_path, settings.truncating_sender_domains_list)
        session_factory = init_db(args.database_url)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    store = SqlAlchemyStateStore(session_factory)

    if args.train_preclassifier:
        return train_command(store, account, settings.preclassifier_model_path or DEFAULT_PRECLASSIFIER_PATH)

    engine = build_engine(settings, config, session_factory, args.rules_only)
    if engine.enabled:
        problem = await engine.provider.health_check()
        if problem:
            logger.warning(f"{problem}; continuing with rule-based fallbacks")
            engine.enabled = False
    if engine.cache is not None:
        engine.cache.cleanup_expired()

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:
        pass  # Windows event loops

    preclassifier = FastPreclassifier(
        policy=ConfidencePolicy.from_config(config),
        model_path=settings.preclassifier_model_path,
    )
    runner = SyncRunner(
        source=MboxMessageSource(args.mbox, account=account),
        store=store,
        engine=engine,
        config=config,
        preclassifier=preclassifier,
        use_preclassifier=not args.skip_preclassifier,
        cancel_token=token,
    )

    try:
        if args.retry_failed:
            summary = await runner.retry_failed()
        else:
            until = args.until + timedelta(days=1) if args.until else None
            date_range = (args.since, until) if (args.since or until) else None
            summary = await runner.run(query=args.query, date_range=date_range, limit=args.limit)
    except PersistenceFailure as e:
        logger.error(f"Sync stopped, state could not be saved: {e}")
        return 1

    print_summary(summary, engine)
    return 130 if summary.cancelled else 0


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.mbox and not args.train_preclassifier:
        parser.error("--mbox is required unless --train-preclassifier is given")
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(get_settings().log_level.upper())
    sys.exit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
