"""
Sync Job Runner for davsync.
Runs one-shot indexing, thumbnail, detection and upload passes without the API.
Can be triggered by system cron/Task Scheduler.
"""

import asyncio
import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from davsync.config import Config
from davsync.container import Container
from davsync.models import (
    BackupPolicy,
    DeletePolicy,
    ScheduleType,
    SourceScope,
    SyncMode,
    UploadStructure,
)
from davsync.policy import BackupPolicyRepository
from davsync.remote_indexer import IndexStatus, RemoteIndexer
from davsync.thumbnails import ThumbnailAcquirer
from davsync.uploader import UploadProcessor

logger = logging.getLogger(__name__)


def build_log_handlers(log_path: Optional[str]) -> list[logging.Handler]:
    """Stdout plus the configured log file, if any."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_path:
        path = Path(log_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    return handlers


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=build_log_handlers(Config.SYNC_JOBS_LOG_PATH),
    )


def save_sample_policy(output_path: Path) -> None:
    """Save a sample backup policy file."""
    sample = BackupPolicy(
        enabled=True,
        backup_root="/Photos/davsync Backup",
        backup_root_selected=True,
        sync_mode=SyncMode.SCHEDULED,
        schedule_type=ScheduleType.DAILY_TIME,
        daily_hour=2,
        daily_minute=30,
        delete_policy=DeletePolicy.APPEND_ONLY,
        source_scope=SourceScope.FULL_LIBRARY,
        upload_structure=UploadStructure.YEAR_MONTH_FOLDERS,
    )
    BackupPolicyRepository(output_path).save(sample)
    print(f"Sample backup policy saved to: {output_path}")


def _prepare(container: Optional[Container]) -> tuple[Optional[Container], Optional[dict]]:
    """Validate config and open storage. Returns (container, failure summary)."""
    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return None, {"success": False, "error": str(e)}

    container = container or Container(watch_local_library=False)
    container.initialize()
    return container, None


def _no_session() -> dict:
    logger.error("No server session configured")
    return {"success": False, "error": "no_session", "timestamp": datetime.now().isoformat()}


async def run_index(container: Optional[Container] = None, folders: Optional[list[str]] = None) -> dict:
    """Run one indexing pass over the selected (or given) folders."""
    logger.info("=" * 60)
    logger.info(f"Starting remote index at {datetime.now()}")
    logger.info("=" * 60)

    container, failure = _prepare(container)
    if failure:
        return failure
    session = container.sessions.get_session()
    if session is None:
        return _no_session()

    async with container.client_factory(session) as client:
        indexer = RemoteIndexer(container.db, client, container.cache)
        result = await indexer.index_selected_folders(folders=folders)

    summary = {
        "success": result.status in (IndexStatus.COMPLETED, IndexStatus.PARTIAL),
        **result.to_output(),
        "timestamp": datetime.now().isoformat(),
    }
    logger.info(f"Remote index complete: {summary}")
    return summary


async def run_thumbnails(
    container: Optional[Container] = None,
    batch_limit: Optional[int] = None,
    max_batches: int = 1,
    requeue_exhausted: bool = False,
    requeue_skipped_videos: bool = False,
) -> dict:
    """Run up to max_batches thumbnail backfill batches."""
    logger.info(f"Starting thumbnail backfill at {datetime.now()}")

    container, failure = _prepare(container)
    if failure:
        return failure
    session = container.sessions.get_session()
    if session is None:
        return _no_session()

    totals = {"fetched_count": 0, "skipped_count": 0, "failed_count": 0, "healed_count": 0}
    result = None
    async with container.client_factory(session) as client:
        acquirer = ThumbnailAcquirer(container.db, client, container.cache)
        if requeue_exhausted:
            requeued = container.db.requeue_exhausted_thumbnails(acquirer.max_retries)
            logger.info(f"Requeued {requeued} exhausted thumbnail(s)")
        if requeue_skipped_videos:
            requeued = container.db.requeue_skipped_videos()
            logger.info(f"Requeued {requeued} skipped video(s)")
        for _ in range(max(1, max_batches)):
            result = await acquirer.backfill_thumbnails(batch_limit=batch_limit)
            for key in totals:
                totals[key] += result.to_output()[key]
            if not result.needs_follow_up:
                break

    summary = {
        "success": not result.aborted,
        **totals,
        "pending_count": result.pending_count,
        "exhausted_count": result.exhausted_count,
        "aborted": result.aborted,
        "timestamp": datetime.now().isoformat(),
    }
    logger.info(f"Thumbnail backfill complete: {summary}")
    return summary


async def run_detect(container: Optional[Container] = None, manual: bool = False) -> dict:
    """Scan the local library and queue uploads and deletes."""
    logger.info(f"Starting local change detection at {datetime.now()}")

    container, failure = _prepare(container)
    if failure:
        return failure

    result = await asyncio.to_thread(container.detector.detect_and_queue, manual)
    summary = {
        "success": True,
        **result.to_output(),
        "timestamp": datetime.now().isoformat(),
    }
    logger.info(f"Local change detection complete: {summary}")
    return summary


async def run_upload(container: Optional[Container] = None, manual: bool = False) -> dict:
    """Drain the ready part of the upload queue once."""
    logger.info(f"Starting upload run at {datetime.now()}")

    container, failure = _prepare(container)
    if failure:
        return failure
    session = container.sessions.get_session()
    if session is None:
        return _no_session()

    async with container.client_factory(session) as client:
        processor = UploadProcessor(container.db, client, container.policies)
        result = await processor.drain(manual=manual)

    output = result.to_output(finished_at=int(datetime.now().timestamp() * 1000))
    summary = {
        "success": result.failed_count == 0,
        **output,
        "next_retry_at": result.next_retry_at,
        "timestamp": datetime.now().isoformat(),
    }
    logger.info(f"Upload run complete: {summary}")
    return summary


async def run_all(container: Optional[Container] = None, manual: bool = False) -> dict:
    """Index, backfill thumbnails, detect local changes and upload, in that order."""
    logger.info("=" * 60)
    logger.info(f"Starting full sync cycle at {datetime.now()}")
    logger.info("=" * 60)

    container, failure = _prepare(container)
    if failure:
        return failure

    steps = {
        "index": await run_index(container),
        "thumbnails": await run_thumbnails(container),
        "detect": await run_detect(container, manual=manual),
        "upload": await run_upload(container, manual=manual),
    }
    summary = {
        "success": all(step.get("success") for step in steps.values()),
        "steps": steps,
        "timestamp": datetime.now().isoformat(),
    }
    logger.info("=" * 60)
    logger.info(f"Full sync cycle complete: success={summary['success']}")
    logger.info("=" * 60)
    return summary


def main():
    """Main entry point for sync jobs."""
    parser = argparse.ArgumentParser(
        description="davsync Sync Job Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python sync_jobs.py index                      # Index all selected remote folders
  python sync_jobs.py index --folder /Photos     # Index one folder
  python sync_jobs.py thumbnails --batches 10    # Backfill up to 10 thumbnail batches
  python sync_jobs.py detect                     # Queue new local media for upload
  python sync_jobs.py upload --manual            # Upload even in manual-only mode
  python sync_jobs.py all                        # Full cycle
  python sync_jobs.py sample-policy              # Generate sample backup policy

Schedule with cron (Linux/Mac):
  */15 * * * * cd /path/to/project && python sync_jobs.py all

Schedule with Task Scheduler (Windows):
  schtasks /create /tn "davsync" /tr "python sync_jobs.py all" /sc minute /mo 15
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    index_parser = subparsers.add_parser("index", help="Index remote folders")
    index_parser.add_argument(
        "--folder", "-f",
        action="append",
        help="Remote folder to index (repeatable); defaults to selected folders"
    )

    thumbs_parser = subparsers.add_parser("thumbnails", help="Backfill thumbnails")
    thumbs_parser.add_argument("--batch-limit", "-b", type=int, help="Rows per batch")
    thumbs_parser.add_argument("--batches", type=int, default=1, help="Maximum number of batches")
    thumbs_parser.add_argument(
        "--requeue-exhausted",
        action="store_true",
        help="Give items that used up their retries another chance"
    )
    thumbs_parser.add_argument(
        "--requeue-skipped-videos",
        action="store_true",
        help="Retry videos skipped earlier, e.g. after installing ffmpeg"
    )

    for name, help_text in (("detect", "Detect local media changes"), ("upload", "Drain the upload queue")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--manual", "-m", action="store_true", help="Treat as a user-initiated run")

    all_parser = subparsers.add_parser("all", help="Run index, thumbnails, detect and upload")
    all_parser.add_argument("--manual", "-m", action="store_true", help="Treat as a user-initiated run")

    policy_parser = subparsers.add_parser("sample-policy", help="Generate sample backup policy file")
    policy_parser.add_argument(
        "--output", "-o",
        type=Path,
        default=Path("backup_policy.yaml"),
        help="Output path for policy file"
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "sample-policy":
        save_sample_policy(args.output)
        sys.exit(0)

    configure_logging()

    if args.command == "index":
        result = asyncio.run(run_index(folders=args.folder))
    elif args.command == "thumbnails":
        result = asyncio.run(run_thumbnails(
            batch_limit=args.batch_limit,
            max_batches=args.batches,
            requeue_exhausted=args.requeue_exhausted,
            requeue_skipped_videos=args.requeue_skipped_videos,
        ))
    elif args.command == "detect":
        result = asyncio.run(run_detect(manual=args.manual))
    elif args.command == "upload":
        result = asyncio.run(run_upload(manual=args.manual))
    else:
        result = asyncio.run(run_all(manual=args.manual))
    sys.exit(0 if result.get("success") else 1)


if __name__ == "__main__":
    main()
