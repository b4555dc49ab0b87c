"""
OpenSearch Index Manager

This module provisions the indexes of the new generation before data is
migrated into them: the versioned index of every fixed collection and the
dated index of every daily partition. All operations are idempotent, an
index that already exists counts as provisioned.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from batch_planner import DailyCollection, FixedCollection
from opensearch_base_manager import OpenSearchBaseManager

logger = logging.getLogger(__name__)


class OpenSearchIndexManager(OpenSearchBaseManager):
    """
    Manages OpenSearch index provisioning.

    This class provides functionality to:
    - Create a single index if it is missing
    - Create the dated index of a daily collection
    - Create the target indexes of all fixed collections
    """

    def __init__(self, scope: str = '', opensearch_endpoint: Optional[str] = None,
                 index_body: Optional[Dict[str, Any]] = None):
        """
        Initialize the OpenSearch index manager.

        Args:
            scope (str): Prefix of the target index names
            opensearch_endpoint (str, optional): The OpenSearch cluster endpoint URL
            index_body (dict, optional): Settings and mappings for new indexes
        """
        super().__init__(opensearch_endpoint=opensearch_endpoint)
        self.scope = scope
        self.index_body = index_body or {}
        logger.info(f"Initialized OpenSearchIndexManager with scope: '{scope}'")

    def ensure_index(self, index_name: str) -> Dict[str, Any]:
        """
        Create an index unless it already exists.

        Args:
            index_name (str): Name of the index

        Returns:
            Dict[str, Any]: Result containing status and details
        """
        result = self.create_index(index_name, self.index_body)
        if result['status'] == 'error':
            logger.error(result['message'])
            return result
        if result['status'] == 'warning':
            logger.info(f"Index {index_name} already exists")
        else:
            logger.info(f"Created index {index_name}")
        return {
            "status": "success",
            "message": f"Index {index_name} is ready",
            "index": index_name
        }

    def ensure_daily_index(self, collection: DailyCollection, date: datetime) -> Dict[str, Any]:
        """Create the index holding one day of a daily collection."""
        return self.ensure_index(collection.index_name(self.scope, date))

    def configure_indexes(self, fixed_collections: List[FixedCollection]) -> Dict[str, Any]:
        """
        Create the target index of every fixed collection.

        Returns:
            Dict[str, Any]: Result listing any index that could not be created
        """
        failed = []
        for target_index in sorted({c.target_index for c in fixed_collections}):
            if self.ensure_index(target_index)['status'] == 'error':
                failed.append(target_index)

        if failed:
            return {
                "status": "error",
                "message": f"Failed to create indexes: {', '.join(failed)}",
                "failed_indexes": failed
            }
        return {
            "status": "success",
            "message": "All fixed collection indexes are ready"
        }
