"""
User store interface.

The sync reads and writes identity data exclusively through UserStore. All
access happens inside short transactions opened with transaction(); the
concrete store decides what commit and rollback mean for its backend.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, List, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


class UserStoreError(Exception):
    """Raised when the user store backend fails."""
    pass


class TenantNotFoundError(UserStoreError):
    """Raised when a tenant does not exist in the user store."""

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant not found: {tenant_id}")


class UserRecord:
    """
    A user loaded inside a transaction.

    Attributes are multi-valued; the sync only reads the first value and
    writes single values. Records must not be kept beyond the transaction
    that loaded them.
    """

    def __init__(self, user_id: str, username: str, attributes: Optional[Dict[str, List[str]]] = None):
        self.user_id = user_id
        self.username = username
        self.attributes = {key: list(values) for key, values in (attributes or {}).items()}
        self.dirty_keys = set()

    def has_attribute(self, key: str) -> bool:
        return key in self.attributes

    def get_attribute(self, key: str) -> Optional[str]:
        """Return the first value of an attribute, or None."""
        values = self.attributes.get(key)
        return values[0] if values else None

    def set_attribute(self, key: str, value: str):
        """Replace an attribute with a single value."""
        self.attributes[key] = [value]
        self.dirty_keys.add(key)

    def __repr__(self):
        return f"UserRecord(user_id={self.user_id!r}, username={self.username!r})"


class UserStore(ABC):
    """Abstract multi-tenant user store."""

    @contextmanager
    def transaction(self) -> Iterator['UserStore']:
        """
        Run a unit of work.

        Commits when the block exits normally and rolls back when it raises.
        The default implementation only brackets the begin/commit/rollback
        hooks.
        """
        self._begin()
        try:
            yield self
        except BaseException:
            self._rollback()
            raise
        else:
            self._commit()

    def _begin(self):
        pass

    def _commit(self):
        pass

    def _rollback(self):
        pass

    def flush_user(self, tenant_id: str, record: UserRecord):
        """
        Persist the pending writes of one user before the transaction ends.

        Stores that cannot write atomically across users override this so a
        rejected write affects only that user. The default leaves everything
        to commit.

        Raises:
            UserStoreError: If the backend rejects the user's writes
        """
        pass

    @abstractmethod
    def list_tenants(self) -> List[str]:
        """Return identifiers of all tenants."""
        pass

    @abstractmethod
    def get_tenant_attributes(self, tenant_id: str) -> Dict[str, str]:
        """
        Return flat tenant configuration attributes.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        pass

    @abstractmethod
    def tenant_exists(self, tenant_id: str) -> bool:
        pass

    @abstractmethod
    def list_user_ids_page(self, tenant_id: str, offset: int, limit: int) -> List[Tuple[str, str]]:
        """
        Return one page of (username, user_id) pairs in a stable order.

        Raises:
            TenantNotFoundError: If the tenant does not exist
        """
        pass

    @abstractmethod
    def get_user(self, tenant_id: str, user_id: str) -> Optional[UserRecord]:
        """Reload a user by internal id; None when it no longer exists."""
        pass

    @abstractmethod
    def set_not_before(self, tenant_id: str, record: UserRecord, epoch_seconds: int):
        """Reject tokens issued to the user before epoch_seconds."""
        pass

    @abstractmethod
    def terminate_sessions(self, tenant_id: str, user_id: str):
        """Terminate every active session of the user."""
        pass
