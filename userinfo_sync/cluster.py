"""
Cluster-wide execution claims.

A claim is a TTL-bounded token for a task key: the first caller to claim a
key wins, every later caller loses until the TTL expires. The scheduler
uses it to run a tenant's sync at most once per day across all nodes.
"""

import socket
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class ClusterCoordinator(ABC):
    """Atomic claim-with-TTL primitive."""

    @abstractmethod
    def try_claim(self, task_key: str, ttl_seconds: int) -> bool:
        """
        Claim task_key for ttl_seconds.

        Returns:
            True if this caller won the claim
        """
        pass

    def ping(self) -> bool:
        """Check that the coordinator backend is reachable."""
        return True


class LocalClusterCoordinator(ClusterCoordinator):
    """Process-local coordinator for single-node deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._claims = {}

    def try_claim(self, task_key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._claims.get(task_key)
            if expires_at is not None and expires_at > now:
                return False
            self._claims[task_key] = now + ttl_seconds
            return True


class RedisClusterCoordinator(ClusterCoordinator):
    """Coordinator backed by Redis `SET key value NX EX ttl`."""

    def __init__(self, client: Any, key_namespace: str = '', owner: Optional[str] = None):
        """
        Args:
            client: redis.Redis instance
            key_namespace: Optional prefix prepended to every task key
            owner: Value stored under the key; defaults to the hostname
        """
        self.client = client
        self.key_namespace = key_namespace
        self.owner = owner or socket.gethostname()

    @classmethod
    def from_url(cls, url: str, key_namespace: str = '') -> 'RedisClusterCoordinator':
        import redis
        return cls(redis.Redis.from_url(url), key_namespace=key_namespace)

    def try_claim(self, task_key: str, ttl_seconds: int) -> bool:
        key = f"{self.key_namespace}{task_key}"
        claimed = self.client.set(key, self.owner, nx=True, ex=max(1, int(ttl_seconds)))
        if not claimed:
            logger.debug(f"Claim {key} already held")
        return bool(claimed)

    def ping(self) -> bool:
        return bool(self.client.ping())


def create_coordinator(cluster_config: Dict[str, Any]) -> Optional[ClusterCoordinator]:
    """
    Build the coordinator named by the `cluster` configuration section.

    Returns:
        A coordinator, or None for `type: none` (the scheduler then runs
        every in-window tenant locally)
    """
    cluster_type = cluster_config.get('type', 'local')
    if cluster_type == 'redis':
        return RedisClusterCoordinator.from_url(cluster_config['url'],
                                                key_namespace=cluster_config.get('key_namespace', ''))
    if cluster_type == 'local':
        return LocalClusterCoordinator()
    return None
