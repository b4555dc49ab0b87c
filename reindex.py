"""
OpenSearch Reindex Manager

This module starts reindex-from-remote tasks on the target cluster and reads
back their progress through the tasks API. Tasks always run asynchronously:
starting one returns a task id immediately and the caller polls it.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from opensearch_base_manager import OpenSearchBaseManager
from work_items import TaskStatus

logger = logging.getLogger(__name__)

TYPE_FIELD = '_type'
ID_FIELD = 'id'
RATE_LIMITED_STATUS = 429

INITIAL_BATCH_SIZE = 1000
SECOND_ATTEMPT_BATCH_SIZE = 500
MIN_BATCH_SIZE = 250


def batch_size_for_attempt(attempts: int) -> int:
    """Shrink the scroll batch on every retry: 1000, 500, then 250."""
    if attempts >= 2:
        return MIN_BATCH_SIZE
    if attempts == 1:
        return SECOND_ATTEMPT_BATCH_SIZE
    return INITIAL_BATCH_SIZE


def build_reindex_body(remote: Dict[str, Any], source_index: str, source_type: str, target_index: str,
                       batch_size: int, date_field: Optional[str] = None,
                       cutoff_date: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Build a reindex-from-remote request body.

    The query always filters on the type discriminator; when a date field is
    given it also keeps only documents at or after the cutoff and sorts on the
    date field, otherwise it sorts on the document id.
    """
    filters = [{"term": {TYPE_FIELD: source_type}}]
    if date_field and cutoff_date is not None:
        filters.append({"range": {date_field: {"gte": cutoff_date.isoformat()}}})

    sort_field = date_field or ID_FIELD
    return {
        "conflicts": "proceed",
        "source": {
            "remote": remote,
            "index": source_index,
            "size": batch_size,
            "query": {"bool": {"filter": filters}},
            "sort": [{sort_field: "asc"}]
        },
        "dest": {
            "index": target_index
        }
    }


class OpenSearchReindexManager(OpenSearchBaseManager):
    """
    Manages remote reindex tasks in OpenSearch.

    This class provides functionality to:
    - Start asynchronous reindex-from-remote tasks
    - Read the status of a running task and cancel an abandoned one
    - Count the documents that landed in a target index
    """

    def __init__(self, opensearch_endpoint: Optional[str] = None):
        """
        Initialize the OpenSearch reindex manager.

        Args:
            opensearch_endpoint (str, optional): The OpenSearch cluster endpoint URL
        """
        super().__init__(opensearch_endpoint=opensearch_endpoint)
        logger.info(f"Initialized OpenSearchReindexManager with endpoint: {self.opensearch_endpoint}")

    def start_reindex(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Start a reindex task without waiting for it to complete.

        The request is sent once: retrying a POST to _reindex could start a
        second task for the same data.

        Args:
            body (Dict[str, Any]): Request body, see build_reindex_body()

        Returns:
            Dict[str, Any]: Result containing status and, on success, the task id
        """
        result = self._make_request('POST', '/_reindex?wait_for_completion=false', data=body, max_retries=1)
        if result['status'] == 'error':
            return {
                "status": "error",
                "message": f"Failed to start reindex: {result['message']}",
                "status_code": result.get('status_code')
            }

        try:
            task_id = result['response'].json().get('task')
        except ValueError as e:
            task_id = None
            logger.error(f"Invalid reindex response: {str(e)}")
        if not task_id:
            return {
                "status": "error",
                "message": "Reindex response did not contain a task id"
            }
        return {
            "status": "success",
            "message": f"Started reindex task {task_id}",
            "task_id": task_id
        }

    def get_task_status(self, task_id: str) -> Dict[str, Any]:
        """
        Get the status of a reindex task.

        Args:
            task_id (str): Task id returned by start_reindex()

        Returns:
            Dict[str, Any]: Result with a TaskStatus under "task_status" on
            success, or an error message and the HTTP status code
        """
        result = self._make_request('GET', f'/_tasks/{task_id}?wait_for_completion=false', max_retries=1)
        if result['status'] == 'error':
            return {
                "status": "error",
                "message": result['message'],
                "status_code": result.get('status_code'),
                "rate_limited": result.get('status_code') == RATE_LIMITED_STATUS
            }

        try:
            task_status = TaskStatus.from_task_response(result['response'].json())
        except ValueError as e:
            return {
                "status": "error",
                "message": f"Invalid task status response for {task_id}: {str(e)}"
            }
        if task_status is None:
            return {
                "status": "error",
                "message": f"Task {task_id} returned no status"
            }
        return {
            "status": "success",
            "message": "Task status retrieved",
            "task_status": task_status
        }

    def cancel_task(self, task_id: str) -> Dict[str, Any]:
        """
        Cancel a reindex task that is being abandoned.

        Args:
            task_id (str): Task id returned by start_reindex()

        Returns:
            Dict[str, Any]: Result containing status and message
        """
        result = self._make_request('POST', f'/_tasks/{task_id}/_cancel', max_retries=1)
        if result['status'] == 'error':
            return {
                "status": "error",
                "message": f"Failed to cancel task {task_id}: {result['message']}"
            }
        return {
            "status": "success",
            "message": f"Cancelled task {task_id}"
        }

    def count(self, index_name: str) -> int:
        """Document count of an index, 0 when it cannot be read."""
        return self._get_index_count(index_name)
