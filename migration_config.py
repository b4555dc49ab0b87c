"""
Migration Configuration

Loads the settings of the data migration job from environment variables
(optionally from a .env file) and validates the migration source connection.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 180
SOURCE_URL_VARIABLE = 'MIGRATE_SOURCE_URL'


class MigrationConfigurationError(ValueError):
    """Raised when the job cannot start because its configuration is incomplete."""
    pass


class MigrationSourceSettings:
    """Connection descriptor of the cluster holding the old index generation."""

    def __init__(self, server_url: str, scope: str = '', username: Optional[str] = None,
                 password: Optional[str] = None):
        self.server_url = server_url
        self.scope = scope
        self.username = username
        self.password = password

    def remote_descriptor(self) -> dict:
        """Build the `source.remote` block of a reindex-from-remote request."""
        remote = {'host': self.server_url}
        if self.username and self.password:
            remote['username'] = self.username
            remote['password'] = self.password
        return remote

    def __repr__(self):
        return f"MigrationSourceSettings(server_url={self.server_url!r}, scope={self.scope!r})"


def parse_cutoff_date(value: str) -> datetime:
    """
    Parse an ISO-8601 date or datetime into an aware UTC datetime.

    Args:
        value (str): e.g. "2024-01-31" or "2024-01-31T12:00:00Z"

    Returns:
        datetime: Parsed timestamp in UTC

    Raises:
        MigrationConfigurationError: If the value is not a valid ISO date
    """
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        raise MigrationConfigurationError(f"Invalid reindex cutoff date: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MigrationSettings:
    """
    Settings of a data migration run.

    Attributes:
        migration_source (MigrationSourceSettings): Source cluster, None when unset
        scope (str): Prefix of the target index names
        retention_days (int): Number of days of daily indexes to migrate
        cutoff_date (datetime): Oldest timestamp of time-series data to migrate
    """

    def __init__(self, migration_source: Optional[MigrationSourceSettings] = None, scope: str = '',
                 retention_days: int = DEFAULT_RETENTION_DAYS, cutoff_date: Optional[datetime] = None,
                 now: Optional[datetime] = None):
        if retention_days < 0:
            raise MigrationConfigurationError(f"Retention days must not be negative: {retention_days}")
        self.migration_source = migration_source
        self.scope = scope
        self.retention_days = retention_days
        if cutoff_date is None:
            now = now or datetime.now(timezone.utc)
            start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
            cutoff_date = start_of_day - timedelta(days=retention_days)
        self.cutoff_date = cutoff_date

    @classmethod
    def from_env(cls, now: Optional[datetime] = None, scope: Optional[str] = None,
                 retention_days: Optional[int] = None, cutoff_date: Optional[datetime] = None,
                 source_scope: Optional[str] = None) -> 'MigrationSettings':
        """
        Build settings from environment variables.

        Keyword arguments that are not None override the matching variable.

        A missing migration source is not an error here; it is reported by
        require_migration_source() when the job starts.
        """
        source = None
        server_url = os.getenv(SOURCE_URL_VARIABLE)
        if server_url:
            source = MigrationSourceSettings(
                server_url=server_url,
                scope=source_scope if source_scope is not None else os.getenv('MIGRATE_SOURCE_SCOPE', ''),
                username=os.getenv('MIGRATE_SOURCE_USERNAME'),
                password=os.getenv('MIGRATE_SOURCE_PASSWORD')
            )

        if retention_days is None:
            retention = os.getenv('EVENTS_RETENTION_DAYS', str(DEFAULT_RETENTION_DAYS))
            try:
                retention_days = int(retention)
            except ValueError:
                raise MigrationConfigurationError(f"Invalid EVENTS_RETENTION_DAYS: {retention}")

        if cutoff_date is None and os.getenv('REINDEX_CUTOFF_DATE'):
            cutoff_date = parse_cutoff_date(os.getenv('REINDEX_CUTOFF_DATE'))

        return cls(
            migration_source=source,
            scope=scope if scope is not None else os.getenv('INDEX_SCOPE_PREFIX', ''),
            retention_days=retention_days,
            cutoff_date=cutoff_date,
            now=now
        )

    def require_migration_source(self) -> MigrationSourceSettings:
        """
        Return the migration source or fail the job.

        Raises:
            MigrationConfigurationError: If no migration source is configured
        """
        if self.migration_source is None or not self.migration_source.server_url:
            raise MigrationConfigurationError(
                f"Please configure the migration source connection {SOURCE_URL_VARIABLE}."
            )
        return self.migration_source
