"""
OpenSearch Data Migration Job

This module migrates the previous index generation from a remote cluster into
the new generation. Every collection (and every day of the daily collections)
becomes a work item that is reindexed by an asynchronous remote reindex task.
A single coordination loop keeps at most five tasks running, polls their
status, retries failed tasks with smaller batches and reports progress. Once
every item has completed or failed, the aliases are moved to the new indexes.

Key features:
- Bounded number of concurrent remote reindex tasks
- Batch size shrinking on every retry (1000, 500, 250)
- Tolerance of transient task status errors
- Periodic progress and a final per-item audit log
- Alias maintenance even after partial failure
"""

import argparse
import logging
import sys
import time
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

from alias_maintenance import OpenSearchAliasManager
from batch_planner import (DailyCollection, FixedCollection, default_daily_collections,
                           default_fixed_collections, plan_work_items)
from index_manager import OpenSearchIndexManager
from migration_config import MigrationSettings, parse_cutoff_date
from reindex import OpenSearchReindexManager, batch_size_for_attempt, build_reindex_body
from work_items import (MAX_ATTEMPTS, MAX_CONSECUTIVE_STATUS_ERRORS, MAX_IN_FLIGHT,
                        ReindexWorkItem, TaskStatus, WorkQueue)

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 5
PROGRESS_INTERVAL_SECONDS = 5 * 60
RETRY_DELAY_SECONDS = 15
RATE_LIMIT_DELAY_SECONDS = 1

# Outcomes of a status poll
KEEP_IN_FLIGHT = 'in_flight'
COMPLETE = 'completed'
RETRY = 'retry'
FAIL = 'failed'


def format_duration(seconds: float, with_days: bool = False) -> str:
    """Format seconds as hh:mm, or d.hh:mm when with_days is set."""
    minutes = int(seconds // 60)
    hours, minutes = divmod(minutes, 60)
    if with_days:
        days, hours = divmod(hours, 24)
        return f"{days}.{hours:02d}:{minutes:02d}"
    return f"{hours:02d}:{minutes:02d}"


def format_counters(item: ReindexWorkItem) -> str:
    """Counters of the item's last known task status for log lines."""
    status = item.last_status or TaskStatus()
    return (f"in {format_duration(status.duration_seconds)} C:{status.created} U:{status.updated} "
            f"D:{status.deleted} X:{status.version_conflicts} T:{status.total} "
            f"A:{item.attempts} ID:{item.task_id}")


def retry_or_fail(item: ReindexWorkItem, max_attempts: int = MAX_ATTEMPTS) -> str:
    """An item that went wrong is retried until it has used all of its attempts."""
    return RETRY if item.attempts < max_attempts else FAIL


def resolve_status(item: ReindexWorkItem, task_status: Optional[TaskStatus],
                   max_attempts: int = MAX_ATTEMPTS,
                   max_status_errors: int = MAX_CONSECUTIVE_STATUS_ERRORS) -> str:
    """
    Apply one status poll to an in-flight item and decide its outcome.

    Updates the item's consecutive status error count and last known status.
    A poll that returned no status and an invalid status both count as status
    errors; the item is resolved once the errors exceed the threshold, or at
    once when an invalid task reports itself complete.

    Args:
        item (ReindexWorkItem): The in-flight item
        task_status (TaskStatus, optional): Snapshot of the poll, None if the poll failed

    Returns:
        str: KEEP_IN_FLIGHT, COMPLETE, RETRY or FAIL
    """
    if task_status is None:
        item.consecutive_status_errors += 1
        if item.consecutive_status_errors > max_status_errors:
            return retry_or_fail(item, max_attempts)
        return KEEP_IN_FLIGHT

    item.last_status = task_status
    if not task_status.valid:
        item.consecutive_status_errors += 1
        if task_status.completed or item.consecutive_status_errors > max_status_errors:
            return retry_or_fail(item, max_attempts)
        return KEEP_IN_FLIGHT

    item.consecutive_status_errors = 0
    return COMPLETE if task_status.completed else KEEP_IN_FLIGHT


def is_progress_due(now: float, last_progress: float, interval: float = PROGRESS_INTERVAL_SECONDS) -> bool:
    return now - last_progress > interval


class MigrationRun:
    """State of one migration run: the work queue and the run-wide counters."""

    def __init__(self, items: List[ReindexWorkItem], started: float, max_in_flight: int = MAX_IN_FLIGHT):
        self.queue = WorkQueue(items, max_in_flight=max_in_flight)
        self.started = started
        self.last_progress = started
        self.retries = 0
        self.highest_progress = 0.0


class DataMigrationJob:
    """
    Migrates the previous index generation into the new one.

    The job plans its work items once, then runs a single-threaded loop that
    dispatches queued items, polls the in-flight ones and reports progress
    until nothing is left, and finally maintains the aliases.
    """

    def __init__(self, settings: MigrationSettings,
                 reindex_manager: OpenSearchReindexManager,
                 index_manager: OpenSearchIndexManager,
                 alias_manager: OpenSearchAliasManager,
                 fixed_collections: Optional[List[FixedCollection]] = None,
                 daily_collections: Optional[List[DailyCollection]] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep,
                 poll_interval: float = POLL_INTERVAL_SECONDS,
                 progress_interval: float = PROGRESS_INTERVAL_SECONDS,
                 retry_delay: float = RETRY_DELAY_SECONDS,
                 rate_limit_delay: float = RATE_LIMIT_DELAY_SECONDS):
        """
        Initialize the data migration job.

        Args:
            settings (MigrationSettings): Source connection, scope, retention and cutoff
            reindex_manager: Starts reindex tasks, reads their status and counts documents
            index_manager: Creates target indexes
            alias_manager: Moves aliases to the new generation
            fixed_collections (list, optional): Defaults to the standard collections
            daily_collections (list, optional): Defaults to the events collection
            clock, sleep: Time source and delay function
        """
        self.settings = settings
        self.reindex_manager = reindex_manager
        self.index_manager = index_manager
        self.alias_manager = alias_manager
        self.fixed_collections = fixed_collections
        self.daily_collections = daily_collections
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval
        self.retry_delay = retry_delay
        self.rate_limit_delay = rate_limit_delay

    def plan(self) -> List[ReindexWorkItem]:
        """
        Plan the work items of the run.

        Raises:
            MigrationConfigurationError: If no migration source is configured
        """
        source = self.settings.require_migration_source()
        if self.fixed_collections is None:
            self.fixed_collections = default_fixed_collections(source.scope, self.settings.scope)
        if self.daily_collections is None:
            self.daily_collections = default_daily_collections()

        return plan_work_items(
            self.fixed_collections,
            self.daily_collections,
            self.settings.retention_days,
            source.scope,
            self.settings.scope,
            self.index_manager.ensure_daily_index
        )

    def try_dispatch_next(self, run: MigrationRun) -> Optional[ReindexWorkItem]:
        """
        Start the reindex task of the next queued item if a slot is free.

        A failed provisioning step or reindex request uses up an attempt and
        is retried like a failed task.

        Returns:
            ReindexWorkItem: The dequeued item, None if nothing was dequeued
        """
        item = run.queue.pop_next()
        if item is None:
            return None

        batch_size = batch_size_for_attempt(item.attempts)
        item.attempts += 1
        item.consecutive_status_errors = 0
        item.task_id = None

        if item.create_target is not None and item.create_target.pending:
            try:
                provisioned = item.create_target.invoke()
            except Exception as e:
                provisioned = {"status": "error", "message": f"{type(e).__name__}: {str(e)}"}
            if provisioned['status'] == 'error':
                logger.error(f"Error creating target index {item.target_index}: {provisioned['message']}")
                self._resolve_failure(run, item)
                return item

        body = build_reindex_body(
            self.settings.migration_source.remote_descriptor(),
            item.source_index,
            item.source_type,
            item.target_index,
            batch_size,
            date_field=item.date_field,
            cutoff_date=self.settings.cutoff_date if item.date_field else None
        )
        try:
            result = self.reindex_manager.start_reindex(body)
        except Exception as e:
            result = {"status": "error", "message": f"{type(e).__name__}: {str(e)}"}
        if result['status'] == 'error':
            logger.error(f"Error starting reindex {item.name} A:{item.attempts}: {result['message']}")
            self._resolve_failure(run, item)
            return item

        item.task_id = result['task_id']
        run.queue.start(item)
        logger.info(f"STARTED - {item.name} A:{item.attempts} B:{batch_size} ({item.task_id})...")
        return item

    def poll_in_flight(self, run: MigrationRun):
        """Poll every in-flight item once and apply the outcome."""
        run.highest_progress = 0.0
        for item in list(run.queue.in_flight):
            try:
                result = self.reindex_manager.get_task_status(item.task_id)
            except Exception as e:
                result = {"status": "error", "message": f"{type(e).__name__}: {str(e)}"}
            task_status = result.get('task_status') if result['status'] == 'success' else None

            if task_status is None:
                logger.warning(f"Error getting task status for {item.target_index} ({item.task_id}): "
                               f"{result.get('message')}")
            else:
                run.highest_progress = max(run.highest_progress, task_status.progress)
                if not task_status.valid:
                    logger.warning(f"Error in task status for {item.target_index} ({item.task_id}): "
                                   f"{task_status.error}")

            outcome = resolve_status(item, task_status)
            if outcome == COMPLETE:
                run.queue.complete(item)
                logger.info(f"COMPLETED - {item.name} ({self._target_count(item)}) {format_counters(item)}")
            elif outcome in (RETRY, FAIL):
                if task_status is None or not task_status.completed:
                    self._cancel_task(item)
                self._resolve_failure(run, item)
            elif result.get('rate_limited'):
                self.sleep(self.rate_limit_delay)

    def _cancel_task(self, item: ReindexWorkItem):
        """Cancel the task of an item that is abandoned while it may still be running."""
        try:
            result = self.reindex_manager.cancel_task(item.task_id)
        except Exception as e:
            result = {"status": "error", "message": f"{type(e).__name__}: {str(e)}"}
        if result['status'] == 'error':
            logger.warning(f"Orphaned task {item.task_id} of {item.name}: {result['message']}")
        else:
            logger.info(f"Cancelled task {item.task_id} of {item.name}")

    def _target_count(self, item: ReindexWorkItem) -> int:
        try:
            return self.reindex_manager.count(item.target_index)
        except Exception as e:
            logger.warning(f"Error counting documents in {item.target_index}: {str(e)}")
            return 0

    def _resolve_failure(self, run: MigrationRun, item: ReindexWorkItem):
        if retry_or_fail(item) == RETRY:
            logger.warning(f"FAILED RETRY - {item.name} {format_counters(item)}")
            item.consecutive_status_errors = 0
            run.queue.requeue(item)
            run.retries += 1
            self.sleep(self.retry_delay)
        else:
            logger.critical(f"FAILED - {item.name} {format_counters(item)}")
            run.queue.fail(item)

    def report_progress(self, run: MigrationRun):
        queue = run.queue
        elapsed = format_duration(self.clock() - run.started, with_days=True)
        logger.info(f"STATUS - I:{len(queue.completed)}/{queue.total} P:{run.highest_progress * 100:.0f}% "
                    f"T:{elapsed} W:{len(queue.in_flight)} F:{len(queue.failed)} R:{run.retries}")

    def report_final_summary(self, run: MigrationRun):
        queue = run.queue
        elapsed = format_duration(self.clock() - run.started, with_days=True)
        logger.info(f"----- DONE - I:{len(queue.completed)}/{queue.total} T:{elapsed} "
                    f"F:{len(queue.failed)} R:{run.retries}")
        for item in queue.completed:
            logger.info(f"SUCCESS - {item.name} ({self._target_count(item)}) {format_counters(item)}")
        for item in queue.failed:
            logger.critical(f"FAILED - {item.name} ({self._target_count(item)}) {format_counters(item)}")

    def finalize_aliases(self) -> Dict[str, Any]:
        return self.alias_manager.maintain_aliases(
            self.fixed_collections,
            self.daily_collections,
            self.settings.retention_days
        )

    def run(self) -> Dict[str, Any]:
        """
        Run the migration to the end.

        Per-item failures never abort the run; only a missing migration
        source does, before any request is sent.

        Returns:
            Dict[str, Any]: Result with the completed, failed and retry counts

        Raises:
            MigrationConfigurationError: If no migration source is configured
        """
        items = self.plan()

        configured = self.index_manager.configure_indexes(self.fixed_collections)
        if configured['status'] == 'error':
            logger.warning(configured['message'])

        run = MigrationRun(items, started=self.clock())
        while not run.queue.is_drained():
            while run.queue.has_capacity() and run.queue.pending:
                self.try_dispatch_next(run)

            self.poll_in_flight(run)

            now = self.clock()
            if is_progress_due(now, run.last_progress, self.progress_interval):
                self.report_progress(run)
                run.last_progress = now

            if not run.queue.is_drained():
                self.sleep(self.poll_interval)

        self.report_final_summary(run)
        aliases = self.finalize_aliases()

        failed = len(run.queue.failed)
        return {
            "status": "success" if failed == 0 else "warning",
            "message": f"Migrated {len(run.queue.completed)} of {run.queue.total} work items, {failed} failed",
            "total": run.queue.total,
            "completed": len(run.queue.completed),
            "failed": failed,
            "retries": run.retries,
            "aliases": aliases
        }


def main():
    """
    Main entry point for the data migration script.

    Handles command line arguments and runs the migration job.
    """
    parser = argparse.ArgumentParser(description='OpenSearch Index Generation Migration')
    parser.add_argument('--retention-days', type=int, help='Days of daily indexes to migrate')
    parser.add_argument('--cutoff-date', help='Oldest date (ISO-8601) of time-series data to migrate')
    parser.add_argument('--scope', help='Prefix of the target index names')
    parser.add_argument('--source-scope', help='Prefix of the source index names')
    parser.add_argument('--poll-interval', type=float, default=POLL_INTERVAL_SECONDS,
                        help='Seconds between status polls')
    args = parser.parse_args()

    logger.info("Starting data migration job")

    try:
        settings = MigrationSettings.from_env(
            scope=args.scope,
            retention_days=args.retention_days,
            cutoff_date=parse_cutoff_date(args.cutoff_date) if args.cutoff_date else None,
            source_scope=args.source_scope
        )
        settings.require_migration_source()

        # Managers connect on construction, so the source is validated first
        job = DataMigrationJob(
            settings,
            reindex_manager=OpenSearchReindexManager(),
            index_manager=OpenSearchIndexManager(scope=settings.scope),
            alias_manager=OpenSearchAliasManager(scope=settings.scope),
            poll_interval=args.poll_interval
        )
        result = job.run()

        if result["status"] == "success":
            logger.info(result["message"])
        else:
            logger.warning(f"Migration finished with failures: {result['message']}")

    except ValueError as e:
        logger.error(f"Configuration error: {str(e)}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {str(e)}")
        return 1

    return 0

if __name__ == "__main__":
    sys.exit(main())

# Example usage:
# MIGRATE_SOURCE_URL=http://old-cluster:9200 python data_migration.py --retention-days 30
