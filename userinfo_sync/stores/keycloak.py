
"""
Keycloak admin REST API user store.

Tenants map to realms. A transaction buffers attribute and not-before writes
on the records it loaded. flush_user writes one user right away: a PUT of
the modified representation followed by its session termination. Whatever
is still buffered is written the same way, user by user, on commit.
Rollback discards the buffer.
"""

import json
import logging
import threading
from typing import Dict, List, Any, Optional, Tuple
from urllib.parse import quote
from http.client import HTTPException

from ..http_client import HTTPClientBase, HTTPClientError
from .base import UserStore, UserRecord, UserStoreError, TenantNotFoundError

logger = logging.getLogger(__name__)


class KeycloakUserRecord(UserRecord):
    """UserRecord that keeps the full representation for write-back."""

    def __init__(self, representation: Dict[str, Any]):
        super().__init__(
            user_id=representation['id'],
            username=representation.get('username', ''),
            attributes=representation.get('attributes') or {}
        )
        self.representation = representation
        self.not_before = None


class KeycloakUserStore(UserStore):
    """UserStore over the Keycloak admin REST API."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Keycloak store.

        Args:
            config: `user_store` configuration section (base_url, auth,
                verify_ssl, timeout_seconds)
        """
        self.client = HTTPClientBase(
            name='keycloak',
            base_url=config['base_url'],
            config=config,
            timeout_seconds=float(config.get('timeout_seconds', 30))
        )
        self._local = threading.local()

    def _request(self, method: str, path: str, query: Optional[Dict[str, Any]] = None,
                 body: Optional[Any] = None, tenant_id: Optional[str] = None) -> Any:
        try:
            status, data = self.client.send(method, path, query=query, body=body,
                                            headers={'Accept': 'application/json'})
        except (OSError, HTTPException, HTTPClientError) as e:
            raise UserStoreError(f"Keycloak request {method} {path} failed: {e}")

        if status == 404 and tenant_id is not None:
            return None
        if status >= 400:
            raise UserStoreError(f"Keycloak request {method} {path} returned HTTP {status}: {data[:200]}")
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise UserStoreError(f"Invalid JSON from Keycloak for {method} {path}: {e}")

    @staticmethod
    def _realm_path(tenant_id: str, suffix: str = '') -> str:
        return f"/admin/realms/{quote(tenant_id, safe='')}{suffix}"

    # --- transactions -----------------------------------------------------

    def _pending(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, 'pending', None)

    def _begin(self):
        self._local.pending = {'records': [], 'logouts': []}

    def _write_user(self, tenant_id: str, record: KeycloakUserRecord, logout: bool):
        """PUT the record when it changed, then end its sessions if asked."""
        user_path = self._realm_path(tenant_id, f"/users/{quote(record.user_id, safe='')}")
        if record.dirty_keys or record.not_before is not None:
            representation = dict(record.representation)
            representation['attributes'] = record.attributes
            if record.not_before is not None:
                representation['notBefore'] = record.not_before
            self._request('PUT', user_path, body=representation)
        if logout:
            self._request('POST', f"{user_path}/logout")

    def flush_user(self, tenant_id: str, record: UserRecord):
        pending = self._pending()
        if pending is None:
            raise RuntimeError("flush_user requires an open transaction")
        if not isinstance(record, KeycloakUserRecord):
            raise UserStoreError(f"Record {record!r} was not loaded from Keycloak")

        key = (tenant_id, record.user_id)
        logout = key in pending['logouts']
        # A flushed user leaves the buffer whether or not the write succeeds
        pending['records'] = [entry for entry in pending['records'] if entry[1] is not record]
        pending['logouts'] = [entry for entry in pending['logouts'] if entry != key]
        self._write_user(tenant_id, record, logout)

    def _commit(self):
        pending = self._pending()
        self._local.pending = None
        if pending is None:
            return

        written = set()
        for tenant_id, record in pending['records']:
            key = (tenant_id, record.user_id)
            self._write_user(tenant_id, record, logout=key in pending['logouts'] and key not in written)
            written.add(key)

        for tenant_id, user_id in pending['logouts']:
            if (tenant_id, user_id) not in written:
                self._request('POST', self._realm_path(tenant_id, f"/users/{quote(user_id, safe='')}/logout"))
                written.add((tenant_id, user_id))

    def _rollback(self):
        self._local.pending = None

    # --- UserStore --------------------------------------------------------

    def list_tenants(self) -> List[str]:
        realms = self._request('GET', '/admin/realms', query={'briefRepresentation': 'true'}) or []
        return [realm['realm'] for realm in realms if realm.get('realm')]

    def get_tenant_attributes(self, tenant_id: str) -> Dict[str, str]:
        realm = self._request('GET', self._realm_path(tenant_id), tenant_id=tenant_id)
        if realm is None:
            raise TenantNotFoundError(tenant_id)
        return {str(k): str(v) for k, v in (realm.get('attributes') or {}).items()}

    def tenant_exists(self, tenant_id: str) -> bool:
        return self._request('GET', self._realm_path(tenant_id), tenant_id=tenant_id) is not None

    def list_user_ids_page(self, tenant_id: str, offset: int, limit: int) -> List[Tuple[str, str]]:
        users = self._request('GET', self._realm_path(tenant_id, '/users'),
                              query={'first': offset, 'max': limit, 'briefRepresentation': 'true'},
                              tenant_id=tenant_id)
        if users is None:
            raise TenantNotFoundError(tenant_id)
        return [(user.get('username') or '', user['id']) for user in users]

    def get_user(self, tenant_id: str, user_id: str) -> Optional[UserRecord]:
        representation = self._request('GET', self._realm_path(tenant_id, f"/users/{quote(user_id, safe='')}"),
                                       tenant_id=tenant_id)
        if representation is None:
            return None

        record = KeycloakUserRecord(representation)
        pending = self._pending()
        if pending is not None:
            pending['records'].append((tenant_id, record))
        return record

    def set_not_before(self, tenant_id: str, record: UserRecord, epoch_seconds: int):
        if not isinstance(record, KeycloakUserRecord):
            raise UserStoreError(f"Record {record!r} was not loaded from Keycloak")
        record.not_before = epoch_seconds

    def terminate_sessions(self, tenant_id: str, user_id: str):
        pending = self._pending()
        if pending is None:
            raise RuntimeError("terminate_sessions requires an open transaction")
        pending['logouts'].append((tenant_id, user_id))
