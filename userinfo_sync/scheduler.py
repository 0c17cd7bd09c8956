"""
Tick-driven scheduler.

On every tick the scheduler evaluates each tenant sequentially: build its
TenantSyncConfig, check whether now falls inside the tenant's run window,
claim the day's task key cluster-wide and, if this node won the claim, run
the tenant's sync. A failing tenant never prevents the remaining tenants
from being evaluated.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .cluster import ClusterCoordinator
from .stores.base import UserStore, UserStoreError
from .tenant_config import TenantSyncConfig

logger = logging.getLogger(__name__)

# Claims outlive a day so a late tick near midnight cannot re-run a tenant
CLAIM_TTL_SECONDS = 26 * 60 * 60


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    """What happened to each tenant during one tick."""

    ran: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    disabled: List[str] = field(default_factory=list)
    outside_window: List[str] = field(default_factory=list)
    already_claimed: List[str] = field(default_factory=list)


class Scheduler:
    """Evaluates tenants once per tick and runs their syncs at most once a day."""

    def __init__(self, store: UserStore, runner_factory: Callable,
                 coordinator: Optional[ClusterCoordinator] = None,
                 clock: Callable[[], datetime] = _utc_now,
                 claim_ttl_seconds: int = CLAIM_TTL_SECONDS):
        """
        Args:
            store: User store, also the source of tenant attributes
            runner_factory: Callable(TenantSyncConfig) -> object with sync_tenant(tenant_id)
            coordinator: Cluster coordinator; None runs in-window tenants locally
            clock: Returns the current timezone-aware time
            claim_ttl_seconds: TTL of the per-day execution claim
        """
        self.store = store
        self.runner_factory = runner_factory
        self.coordinator = coordinator
        self.clock = clock
        self.claim_ttl_seconds = claim_ttl_seconds

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Evaluate every tenant once.

        Args:
            now: Override for the current time (defaults to the clock)

        Returns:
            TickReport describing the outcome per tenant
        """
        now = now or self.clock()
        report = TickReport()

        try:
            tenant_ids = self.store.list_tenants()
        except UserStoreError as e:
            logger.error(f"Failed to list tenants: {e}")
            return report

        for tenant_id in tenant_ids:
            try:
                self._evaluate_tenant(tenant_id, now, report)
            except Exception as e:
                logger.error(f"FAILED tenant={tenant_id} evaluation: {e}", exc_info=True)
                report.failed.append(tenant_id)

        return report

    def _evaluate_tenant(self, tenant_id: str, now: datetime, report: TickReport):
        attributes = self.store.get_tenant_attributes(tenant_id)
        config = TenantSyncConfig.from_attributes(attributes, tenant_id)

        if not config.enabled:
            report.disabled.append(tenant_id)
            return

        if not config.is_now_in_window(now):
            report.outside_window.append(tenant_id)
            return

        task_key = config.build_task_key(tenant_id, config.day_key(now))

        if self.coordinator is None:
            logger.warning(f"No cluster coordinator available. Running locally. tenant={tenant_id}")
        elif not self.coordinator.try_claim(task_key, self.claim_ttl_seconds):
            logger.debug(f"Task {task_key} already claimed, skipping tenant={tenant_id}")
            report.already_claimed.append(tenant_id)
            return

        if self.run_tenant(tenant_id, config, task_key):
            report.ran.append(tenant_id)
        else:
            report.failed.append(tenant_id)

    def run_tenant(self, tenant_id: str, config: TenantSyncConfig, task_key: str = '') -> bool:
        """
        Run one tenant's sync, logging START/DONE/FAILED.

        Returns:
            True if the sync completed without raising
        """
        logger.info(f"START tenant={tenant_id} taskKey={task_key}")
        try:
            self.runner_factory(config).sync_tenant(tenant_id)
        except Exception as e:
            logger.error(f"FAILED tenant={tenant_id} taskKey={task_key}: {e}", exc_info=True)
            return False
        logger.info(f"DONE tenant={tenant_id} taskKey={task_key}")
        return True
