"""
Sync runner.

Drives one tenant's sync page by page:

    Start -> LoadPage -> (empty? End) -> Fetch -> Apply -> LoadPage(next) ...

The fetch worker pool is created once at Start and shut down at End,
however many pages ran. Pages are processed strictly in offset order.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable

from .apply import ApplyStage, PageOutcome
from .fetch import FetchStage
from .snapshot import SnapshotLoader
from .stores.base import UserStore
from .tenant_config import TenantSyncConfig

logger = logging.getLogger(__name__)


@dataclass
class SyncSummary:
    """Totals for one tenant sync."""

    tenant_id: str
    pages: int = 0
    users_seen: int = 0
    changed_users: int = 0
    invalidated_users: int = 0
    failed_users: int = 0
    runtime_seconds: float = 0.0

    def add(self, outcome: PageOutcome):
        self.pages += 1
        self.users_seen += outcome.page_size
        self.changed_users += outcome.changed_users
        self.invalidated_users += outcome.invalidated_users
        self.failed_users += outcome.failed_users


class SyncRunner:
    """Runs the snapshot, fetch and apply stages for one tenant."""

    def __init__(self, store: UserStore, directory_client, config: TenantSyncConfig,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            store: User store
            directory_client: Object with fetch(subject_id, max_attempts, base_backoff_ms)
            config: Tenant sync configuration
            clock: Epoch clock used for not-before timestamps
        """
        self.store = store
        self.directory_client = directory_client
        self.config = config
        self.clock = clock

    def _create_fetch_stage(self) -> FetchStage:
        return FetchStage(
            client=self.directory_client,
            max_concurrency=self.config.max_concurrency,
            per_subject_timeout_ms=self.config.per_subject_timeout_ms,
            retry_max_attempts=self.config.retry_max_attempts,
            retry_base_backoff_ms=self.config.retry_base_backoff_ms
        )

    def sync_tenant(self, tenant_id: str) -> SyncSummary:
        """
        Sync every user of a tenant.

        Args:
            tenant_id: Tenant to sync

        Returns:
            SyncSummary with page totals
        """
        started = time.monotonic()
        summary = SyncSummary(tenant_id=tenant_id)

        loader = SnapshotLoader(self.store)
        applier = ApplyStage(
            store=self.store,
            attribute_mapping=self.config.attribute_mapping,
            invalidate_on_keys=self.config.invalidate_on_keys,
            invalidate_logout=self.config.invalidate_logout,
            clock=self.clock
        )

        with self._create_fetch_stage() as fetcher:
            offset = 0
            while True:
                snapshot = loader.load_page(tenant_id, offset, self.config.batch_size)
                if not snapshot.has_more:
                    break

                results = fetcher.fetch_all(snapshot.usernames)
                outcome = applier.apply(tenant_id, snapshot, results)
                summary.add(outcome)

                offset += self.config.batch_size

        summary.runtime_seconds = time.monotonic() - started
        logger.info(f"tenant={tenant_id} pages={summary.pages} users={summary.users_seen} "
                    f"changedUsers={summary.changed_users} invalidatedUsers={summary.invalidated_users} "
                    f"failedUsers={summary.failed_users} runtime={summary.runtime_seconds:.2f}s")
        return summary
