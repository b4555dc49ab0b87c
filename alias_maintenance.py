"""
OpenSearch Alias Manager

This module points the read/write aliases at the new index generation once a
migration run has finished.

Key features:
- Versioned indexes: the unversioned alias moves to the current version
- Daily indexes: the collection alias covers every dated index inside the
  retention window and is removed from older ones
- All alias changes are applied in a single atomic request
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from batch_planner import DAILY_INDEX_DATE_FORMAT, DailyCollection, FixedCollection
from opensearch_base_manager import ALIASES_ENDPOINT, OpenSearchBaseManager

logger = logging.getLogger(__name__)


class OpenSearchAliasManager(OpenSearchBaseManager):
    """
    Manages OpenSearch index aliases of the new generation.
    """

    def __init__(self, scope: str = '', opensearch_endpoint: Optional[str] = None):
        """
        Initialize the OpenSearch alias manager.

        Args:
            scope (str): Prefix of the target index and alias names
            opensearch_endpoint (str, optional): The OpenSearch cluster endpoint URL
        """
        super().__init__(opensearch_endpoint=opensearch_endpoint)
        self.scope = scope
        logger.info(f"Initialized OpenSearchAliasManager with endpoint: {self.opensearch_endpoint}")

    def _get_aliases(self) -> Dict[str, List[str]]:
        """Map each alias name to the indexes it currently points to."""
        result = self._make_request('GET', '/_cat/aliases?format=json')
        if result['status'] == 'error':
            raise RuntimeError(f"Error getting aliases: {result['message']}")

        aliases: Dict[str, List[str]] = {}
        for entry in result['response'].json():
            aliases.setdefault(entry['alias'], []).append(entry['index'])
        return aliases

    def _list_indexes(self, prefix: str) -> List[str]:
        """Names of the indexes starting with a prefix."""
        result = self._make_request('GET', f'/_cat/indices/{prefix}*?format=json&h=index')
        if result['status'] == 'error':
            # A wildcard matching nothing is not an error
            if result.get('status_code') == 404:
                return []
            raise RuntimeError(f"Error listing indexes {prefix}*: {result['message']}")
        return [entry['index'] for entry in result['response'].json()]

    def _fixed_collection_actions(self, collection: FixedCollection,
                                  aliases: Dict[str, List[str]]) -> List[Dict[str, Any]]:
        alias_name = collection.alias
        current = aliases.get(alias_name, [])
        actions = [
            {"remove": {"index": index, "alias": alias_name}}
            for index in current if index != collection.target_index
        ]
        if collection.target_index not in current:
            if not self._verify_index_exists(collection.target_index):
                # The alias keeps pointing at its current index
                logger.warning(f"Skipping alias {alias_name}: index {collection.target_index} does not exist")
                return []
            actions.append({"add": {"index": collection.target_index, "alias": alias_name}})
        return actions

    def _daily_collection_actions(self, collection: DailyCollection, retention_days: int, now: datetime,
                                  aliases: Dict[str, List[str]]) -> List[Dict[str, Any]]:
        alias_name = f"{self.scope}{collection.name}"
        prefix = collection.index_prefix(self.scope)
        oldest = (now - timedelta(days=retention_days)).date()
        current = set(aliases.get(alias_name, []))

        actions = []
        for index in sorted(self._list_indexes(prefix)):
            try:
                index_date = datetime.strptime(index[len(prefix):], DAILY_INDEX_DATE_FORMAT).date()
            except ValueError:
                logger.debug(f"Ignoring index {index}: no date suffix")
                continue

            if index_date >= oldest and index not in current:
                actions.append({"add": {"index": index, "alias": alias_name}})
            elif index_date < oldest and index in current:
                actions.append({"remove": {"index": index, "alias": alias_name}})
        return actions

    def maintain_aliases(self, fixed_collections: List[FixedCollection],
                         daily_collections: List[DailyCollection],
                         retention_days: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Point every collection alias at the new generation.

        Args:
            fixed_collections: Versioned collections
            daily_collections: Time-partitioned collections
            retention_days (int): Days of daily indexes that stay readable
            now (datetime, optional): Reference time, defaults to the current UTC time

        Returns:
            dict: Operation result containing status and the applied actions
        """
        now = now or datetime.now(timezone.utc)
        logger.info("Updating aliases")
        try:
            aliases = self._get_aliases()
            actions = []
            for collection in fixed_collections:
                actions.extend(self._fixed_collection_actions(collection, aliases))
            for collection in daily_collections:
                actions.extend(self._daily_collection_actions(collection, retention_days, now, aliases))
        except (RuntimeError, ValueError, KeyError) as e:
            error_msg = f"Error preparing alias update: {str(e)}"
            logger.error(error_msg)
            return {
                "status": "error",
                "message": error_msg
            }

        if not actions:
            logger.info("Aliases are already up to date")
            return {
                "status": "success",
                "message": "Aliases are already up to date",
                "actions": []
            }

        result = self._make_request('POST', ALIASES_ENDPOINT, data={"actions": actions})
        if result['status'] == 'error':
            error_msg = f"Failed to update aliases: {result['message']}"
            logger.error(error_msg)
            return {
                "status": "error",
                "message": error_msg,
                "actions": actions
            }

        logger.info(f"Updated aliases with {len(actions)} actions")
        return {
            "status": "success",
            "message": f"Applied {len(actions)} alias actions",
            "actions": actions
        }
