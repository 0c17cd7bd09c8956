"""
In-memory user store.

Backs tests and the `memory` store type in the host configuration. Records
handed out by get_user are copies; their changes, not-before updates and
session terminations become visible only when the enclosing transaction
commits.
"""

import copy
import logging
import threading
from typing import Dict, List, Any, Optional, Tuple

from .base import UserStore, UserRecord, TenantNotFoundError

logger = logging.getLogger(__name__)


class _PendingWork:
    def __init__(self):
        self.records = []
        self.not_before = {}
        self.logouts = []


class InMemoryUserStore(UserStore):
    """Thread-safe dictionary-backed store with transactional writes."""

    def __init__(self):
        self._lock = threading.RLock()
        self._local = threading.local()
        self._tenants = {}
        # tenant -> user_id -> {'username', 'attributes', 'not_before', 'sessions'}
        self._users = {}

    @classmethod
    def from_config(cls, tenants_config: Dict[str, Any]) -> 'InMemoryUserStore':
        """
        Build a store from the `user_store.tenants` configuration section.

        Args:
            tenants_config: Mapping of tenant id to {'attributes': {...},
                'users': [{'id', 'username', 'attributes'}]}
        """
        store = cls()
        for tenant_id, tenant in (tenants_config or {}).items():
            tenant = tenant or {}
            store.add_tenant(tenant_id, tenant.get('attributes') or {})
            for user in tenant.get('users') or []:
                store.add_user(tenant_id, str(user.get('id') or user['username']),
                               user['username'], user.get('attributes') or {})
        return store

    # --- seeding and inspection -------------------------------------------

    def add_tenant(self, tenant_id: str, attributes: Optional[Dict[str, Any]] = None):
        with self._lock:
            self._tenants[tenant_id] = {k: str(v) for k, v in (attributes or {}).items()}
            self._users.setdefault(tenant_id, {})

    def remove_tenant(self, tenant_id: str):
        with self._lock:
            self._tenants.pop(tenant_id, None)
            self._users.pop(tenant_id, None)

    def add_user(self, tenant_id: str, user_id: str, username: str,
                 attributes: Optional[Dict[str, Any]] = None, sessions: int = 0):
        """Add a user; scalar attribute values are wrapped into single-value lists."""
        normalized = {}
        for key, value in (attributes or {}).items():
            normalized[key] = [str(v) for v in value] if isinstance(value, list) else [str(value)]
        with self._lock:
            if tenant_id not in self._tenants:
                raise TenantNotFoundError(tenant_id)
            self._users[tenant_id][user_id] = {
                'username': username,
                'attributes': normalized,
                'not_before': 0,
                'sessions': sessions,
            }

    def remove_user(self, tenant_id: str, user_id: str):
        with self._lock:
            self._users.get(tenant_id, {}).pop(user_id, None)

    def remove_attribute(self, tenant_id: str, user_id: str, key: str):
        with self._lock:
            state = self._users.get(tenant_id, {}).get(user_id)
            if state is not None:
                state['attributes'].pop(key, None)

    def user_state(self, tenant_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Return a deep copy of the committed state of a user."""
        with self._lock:
            state = self._users.get(tenant_id, {}).get(user_id)
            return copy.deepcopy(state) if state is not None else None

    # --- transactions -----------------------------------------------------

    def _pending(self) -> Optional[_PendingWork]:
        return getattr(self._local, 'pending', None)

    def _begin(self):
        self._local.pending = _PendingWork()

    def _commit(self):
        pending = self._pending()
        self._local.pending = None
        if pending is None:
            return
        with self._lock:
            for tenant_id, record in pending.records:
                state = self._users.get(tenant_id, {}).get(record.user_id)
                if state is None:
                    logger.debug(f"User {record.user_id} vanished before commit, dropping changes")
                    continue
                for key in record.dirty_keys:
                    # Keys removed since the record was loaded stay removed
                    if key in state['attributes']:
                        state['attributes'][key] = list(record.attributes[key])
            for (tenant_id, user_id), epoch_seconds in pending.not_before.items():
                state = self._users.get(tenant_id, {}).get(user_id)
                if state is not None:
                    state['not_before'] = epoch_seconds
            for tenant_id, user_id in pending.logouts:
                state = self._users.get(tenant_id, {}).get(user_id)
                if state is not None:
                    state['sessions'] = 0

    def _rollback(self):
        self._local.pending = None

    # --- UserStore --------------------------------------------------------

    def list_tenants(self) -> List[str]:
        with self._lock:
            return list(self._tenants)

    def get_tenant_attributes(self, tenant_id: str) -> Dict[str, str]:
        with self._lock:
            if tenant_id not in self._tenants:
                raise TenantNotFoundError(tenant_id)
            return dict(self._tenants[tenant_id])

    def tenant_exists(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._tenants

    def list_user_ids_page(self, tenant_id: str, offset: int, limit: int) -> List[Tuple[str, str]]:
        with self._lock:
            if tenant_id not in self._tenants:
                raise TenantNotFoundError(tenant_id)
            ordered = sorted(self._users[tenant_id].items(), key=lambda item: item[1]['username'])
            return [(state['username'], user_id) for user_id, state in ordered[offset:offset + limit]]

    def get_user(self, tenant_id: str, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            if tenant_id not in self._tenants:
                raise TenantNotFoundError(tenant_id)
            state = self._users[tenant_id].get(user_id)
            if state is None:
                return None
            record = UserRecord(user_id, state['username'], state['attributes'])

        pending = self._pending()
        if pending is not None:
            pending.records.append((tenant_id, record))
        else:
            logger.warning(f"get_user({user_id}) called outside a transaction; changes will not persist")
        return record

    def set_not_before(self, tenant_id: str, record: UserRecord, epoch_seconds: int):
        pending = self._pending()
        if pending is None:
            raise RuntimeError("set_not_before requires an open transaction")
        pending.not_before[(tenant_id, record.user_id)] = epoch_seconds

    def terminate_sessions(self, tenant_id: str, user_id: str):
        pending = self._pending()
        if pending is None:
            raise RuntimeError("terminate_sessions requires an open transaction")
        pending.logouts.append((tenant_id, user_id))
