"""
Batch Planner

Enumerates every reindex work item of a migration run up front: one item per
fixed collection, and one item per day of retention for each daily collection.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from work_items import EnsurePartitionStep, ReindexWorkItem

logger = logging.getLogger(__name__)

DAILY_INDEX_DATE_FORMAT = '%Y.%m.%d'


class FixedCollection:
    """A logical collection stored in a single versioned index."""

    def __init__(self, source_index: str, source_type: str, target_index: str):
        self.source_index = source_index
        self.source_type = source_type
        self.target_index = target_index

    @property
    def alias(self) -> str:
        """Alias name of the target, the index name without its version suffix."""
        base, separator, version = self.target_index.rpartition('-v')
        return base if separator and version.isdigit() else self.target_index

    def __repr__(self):
        return f"FixedCollection({self.source_index}/{self.source_type} -> {self.target_index})"


class DailyCollection:
    """A time-series collection partitioned into one index per day."""

    def __init__(self, name: str, source_type: str, date_field: str, version: int = 1):
        self.name = name
        self.source_type = source_type
        self.date_field = date_field
        self.version = version

    def index_name(self, scope: str, date: datetime) -> str:
        return f"{scope}{self.name}-v{self.version}-{date.strftime(DAILY_INDEX_DATE_FORMAT)}"

    def index_prefix(self, scope: str) -> str:
        return f"{scope}{self.name}-v{self.version}-"

    def __repr__(self):
        return f"DailyCollection({self.name}-v{self.version})"


def default_fixed_collections(source_scope: str, scope: str) -> List[FixedCollection]:
    """Collections of the previous generation that share organizations-v1 and stacks-v1."""
    organizations = f"{source_scope}organizations-v1"
    return [
        FixedCollection(organizations, 'organization', f"{scope}organizations-v1"),
        FixedCollection(organizations, 'project', f"{scope}projects-v1"),
        FixedCollection(organizations, 'token', f"{scope}tokens-v1"),
        FixedCollection(organizations, 'user', f"{scope}users-v1"),
        FixedCollection(organizations, 'webhook', f"{scope}webhooks-v1"),
        FixedCollection(f"{source_scope}stacks-v1", 'stacks', f"{scope}stacks-v1"),
    ]


def default_daily_collections() -> List[DailyCollection]:
    return [DailyCollection('events', 'events', 'updated_utc')]


def plan_work_items(fixed_collections: List[FixedCollection],
                    daily_collections: List[DailyCollection],
                    retention_days: int,
                    source_scope: str,
                    scope: str,
                    ensure_partition: Callable[[DailyCollection, datetime], Dict[str, Any]],
                    now: Optional[datetime] = None) -> List[ReindexWorkItem]:
    """
    Produce the ordered work items of a migration run.

    Fixed collections come first and migrate without a date filter. Each daily
    collection then yields one item per day from today back to
    `retention_days` days ago (inclusive), restricted by its date field and
    carrying a step that creates the dated destination index.

    Args:
        fixed_collections: Collections migrated as a whole
        daily_collections: Time-partitioned collections
        retention_days (int): Days of daily partitions to migrate
        source_scope (str): Index name prefix on the migration source
        scope (str): Index name prefix on the target
        ensure_partition: Idempotent callable creating a collection's index for a date
        now (datetime, optional): Reference time, defaults to the current UTC time

    Returns:
        List[ReindexWorkItem]: Work items in dispatch order
    """
    now = now or datetime.now(timezone.utc)
    items = [
        ReindexWorkItem(collection.source_index, collection.source_type, collection.target_index)
        for collection in fixed_collections
    ]

    for collection in daily_collections:
        for day in range(retention_days + 1):
            date = now - timedelta(days=day)
            items.append(ReindexWorkItem(
                source_index=collection.index_name(source_scope, date),
                source_type=collection.source_type,
                target_index=collection.index_name(scope, date),
                date_field=collection.date_field,
                create_target=EnsurePartitionStep(ensure_partition, collection, date)
            ))

    logger.info(f"Planned {len(items)} work items: {len(fixed_collections)} fixed collections, "
                f"{len(items) - len(fixed_collections)} daily partitions over {retention_days} days")
    return items
