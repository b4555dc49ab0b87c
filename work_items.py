"""
Reindex work items

Data entities of the migration job: the unit of work moved from one index
generation to the next, the snapshot of its remote task, and the queue that
owns every item while the job runs.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
MAX_IN_FLIGHT = 5
MAX_CONSECUTIVE_STATUS_ERRORS = 5


@dataclass
class TaskStatus:
    """Progress snapshot of a remote reindex task."""
    completed: bool = False
    valid: bool = True
    created: int = 0
    updated: int = 0
    deleted: int = 0
    version_conflicts: int = 0
    total: int = 0
    running_time_nanos: int = 0
    error: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.deleted + self.version_conflicts

    @property
    def progress(self) -> float:
        """Fraction of the source documents processed, 0 when the total is unknown."""
        if self.total <= 0:
            return 0.0
        return self.processed / self.total

    @property
    def duration_seconds(self) -> float:
        return self.running_time_nanos / 1_000_000_000

    @classmethod
    def from_task_response(cls, body: Dict[str, Any]) -> Optional['TaskStatus']:
        """
        Build a snapshot from a `GET /_tasks/{id}` response body.

        Returns None when the body carries no task status. A task that ended
        with an error or with bulk/search failures is marked invalid.
        """
        task = body.get('task') or {}
        status = task.get('status')
        if status is None:
            return None

        error = body.get('error')
        failures = (body.get('response') or {}).get('failures') or []
        message = None
        if error:
            message = error.get('reason') if isinstance(error, dict) else str(error)
        elif failures:
            message = f"{len(failures)} failures, first: {failures[0]}"

        return cls(
            completed=bool(body.get('completed', False)),
            valid=message is None,
            created=status.get('created', 0),
            updated=status.get('updated', 0),
            deleted=status.get('deleted', 0),
            version_conflicts=status.get('version_conflicts', 0),
            total=status.get('total', 0),
            running_time_nanos=task.get('running_time_in_nanos', 0),
            error=message
        )


class EnsurePartitionStep:
    """
    Provisioning step that creates the destination partition of a collection
    for one date.

    The step is consumed on its first invocation, whether or not it succeeds,
    so retried dispatches never provision twice.
    """

    def __init__(self, ensure_partition: Callable[[Any, datetime], Dict[str, Any]], collection: Any, date: datetime):
        self.ensure_partition = ensure_partition
        self.collection = collection
        self.date = date
        self.invoked = False

    @property
    def pending(self) -> bool:
        return not self.invoked

    def invoke(self) -> Dict[str, Any]:
        self.invoked = True
        return self.ensure_partition(self.collection, self.date)

    def __repr__(self):
        return f"EnsurePartitionStep(date={self.date:%Y.%m.%d}, invoked={self.invoked})"


@dataclass(eq=False)
class ReindexWorkItem:
    """One source -> target migration unit and its retry/progress state."""
    source_index: str
    source_type: str
    target_index: str
    date_field: Optional[str] = None
    create_target: Optional[EnsurePartitionStep] = None
    task_id: Optional[str] = None
    attempts: int = 0
    consecutive_status_errors: int = 0
    last_status: Optional[TaskStatus] = None

    @property
    def name(self) -> str:
        return f"{self.source_index}/{self.source_type} -> {self.target_index}"


class WorkQueue:
    """
    FIFO queue of pending work items plus the in-flight, completed and failed
    sets. Every item belongs to exactly one of the four at any time.
    """

    def __init__(self, items: Optional[List[ReindexWorkItem]] = None, max_in_flight: int = MAX_IN_FLIGHT):
        self.pending = deque(items or [])
        self.in_flight: List[ReindexWorkItem] = []
        self.completed: List[ReindexWorkItem] = []
        self.failed: List[ReindexWorkItem] = []
        self.max_in_flight = max_in_flight
        self.total = len(self.pending)

    def has_capacity(self) -> bool:
        return len(self.in_flight) < self.max_in_flight

    def is_drained(self) -> bool:
        return not self.pending and not self.in_flight

    def pop_next(self) -> Optional[ReindexWorkItem]:
        """Pop the head of the queue when an in-flight slot is free."""
        if not self.pending or not self.has_capacity():
            return None
        return self.pending.popleft()

    def start(self, item: ReindexWorkItem):
        if not self.has_capacity():
            raise RuntimeError(f"In-flight limit of {self.max_in_flight} reached")
        self.in_flight.append(item)

    def requeue(self, item: ReindexWorkItem):
        self._release(item)
        self.pending.append(item)

    def complete(self, item: ReindexWorkItem):
        self._release(item)
        self.completed.append(item)

    def fail(self, item: ReindexWorkItem):
        self._release(item)
        self.failed.append(item)

    def _release(self, item: ReindexWorkItem):
        if item in self.in_flight:
            self.in_flight.remove(item)
