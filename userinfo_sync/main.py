"""
Host process for the user info sync.

This module wires configuration, logging, the user store, the directory
client and the cluster coordinator into a Scheduler and drives it on a
fixed tick.
"""

import sys
import json
import signal
import logging
import threading
from datetime import datetime
from typing import Dict, Any, Optional

from userinfo_sync.config import load_config, ConfigurationError
from userinfo_sync.logging_setup import setup_logging, get_logging_stats, security_logger
from userinfo_sync.cluster import create_coordinator
from userinfo_sync.directory_client import DirectoryClient
from userinfo_sync.runner import SyncRunner
from userinfo_sync.scheduler import Scheduler, TickReport
from userinfo_sync.stores import UserStore, InMemoryUserStore, KeycloakUserStore, UserStoreError
from userinfo_sync.tenant_config import TenantSyncConfig

logger = logging.getLogger(__name__)


def create_user_store(user_store_config: Dict[str, Any]) -> UserStore:
    """Build the user store named by the `user_store` configuration section."""
    if user_store_config.get('type') == 'memory':
        return InMemoryUserStore.from_config(user_store_config.get('tenants') or {})
    return KeycloakUserStore(user_store_config)


class SyncService:
    """
    Long-running host for the scheduler.

    Loads configuration, builds collaborators and runs ticks until stopped.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize sync service.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.store = None
        self.coordinator = None
        self.scheduler = None
        self._stop_event = threading.Event()

    def setup(self, configure_logging: bool = True):
        """
        Load configuration and build collaborators.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        self.config = load_config(self.config_path)
        if configure_logging:
            setup_logging(self.config.get('logging', {}))

        self.store = create_user_store(self.config['user_store'])
        self.coordinator = create_coordinator(self.config['cluster'])
        self.scheduler = Scheduler(
            store=self.store,
            runner_factory=self.create_runner,
            coordinator=self.coordinator
        )
        logger.info(f"Sync service ready: store={self.config['user_store']['type']} "
                    f"cluster={self.config['cluster']['type']}")

    def create_runner(self, tenant_config: TenantSyncConfig) -> SyncRunner:
        """Build a SyncRunner with a directory client tuned for the tenant."""
        client = DirectoryClient(
            self.config['directory'],
            http_timeout_ms=tenant_config.http_timeout_ms,
            result_type=tenant_config.result_type
        )
        return SyncRunner(self.store, client, tenant_config)

    def run_once(self) -> TickReport:
        """Run a single scheduler tick."""
        report = self.scheduler.tick()
        logger.info(f"Tick complete: ran={len(report.ran)} failed={len(report.failed)} "
                    f"claimed_elsewhere={len(report.already_claimed)}")
        return report

    def run_forever(self):
        """Run ticks every `scheduler.tick_seconds` until stop() is called."""
        tick_seconds = float(self.config['scheduler']['tick_seconds'])
        logger.info(f"Starting scheduler loop, tick={tick_seconds}s")
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Unexpected error during tick: {e}", exc_info=True)
            self._stop_event.wait(tick_seconds)
        logger.info("Scheduler loop stopped")

    def stop(self, *_):
        self._stop_event.set()

    def run_tenant_now(self, tenant_id: str) -> bool:
        """
        Run one tenant's sync immediately, bypassing window and claim.

        Returns:
            True if the sync completed
        """
        attributes = self.store.get_tenant_attributes(tenant_id)
        tenant_config = TenantSyncConfig.from_attributes(attributes, tenant_id)
        security_logger.log_forced_run(tenant_id)
        return self.scheduler.run_tenant(tenant_id, tenant_config, task_key='manual')

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync host.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            if self.config is None:
                self.setup(configure_logging=False)
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            tenants = self.store.list_tenants()
            health_status['checks']['user_store'] = {
                'status': 'pass',
                'message': f'{len(tenants)} tenants visible'
            }
        except UserStoreError as e:
            health_status['checks']['user_store'] = {
                'status': 'fail',
                'message': f'User store unreachable: {e}'
            }
            health_status['status'] = 'unhealthy'

        if self.coordinator is None:
            health_status['checks']['cluster'] = {
                'status': 'skip',
                'message': 'No cluster coordinator configured, running single-node'
            }
        else:
            try:
                if not self.coordinator.ping():
                    raise ConnectionError('ping returned false')
                health_status['checks']['cluster'] = {
                    'status': 'pass',
                    'message': f'{type(self.coordinator).__name__} reachable'
                }
            except Exception as e:
                health_status['checks']['cluster'] = {
                    'status': 'fail',
                    'message': f'Cluster coordinator unreachable: {e}'
                }
                health_status['status'] = 'unhealthy'

        health_status['checks']['logging'] = {
            'status': 'pass',
            'message': json.dumps(get_logging_stats())
        }
        return health_status


def main(argv=None):
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='Directory to user store attribute sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--once', action='store_true', help='Run a single scheduler tick and exit')
    parser.add_argument('--tenant', help='Tenant to sync immediately (with --now-run)')
    parser.add_argument('--now-run', action='store_true',
                        help='Sync --tenant now, ignoring the run window and execution claim')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args(argv)

    service = SyncService(config_path=args.config)

    if args.health_check:
        health_status = service.health_check()
        print(json.dumps(health_status, indent=2))
        return 0 if health_status['status'] == 'healthy' else 1

    try:
        service.setup()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.now_run:
        if not args.tenant:
            parser.error('--now-run requires --tenant')
        try:
            return 0 if service.run_tenant_now(args.tenant) else 1
        except UserStoreError as e:
            print(f"Cannot sync tenant {args.tenant}: {e}", file=sys.stderr)
            return 1

    if args.once:
        report = service.run_once()
        return 1 if report.failed else 0

    signal.signal(signal.SIGINT, service.stop)
    signal.signal(signal.SIGTERM, service.stop)
    service.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
