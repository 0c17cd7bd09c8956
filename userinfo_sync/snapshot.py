"""
Snapshot loader.

Reads one page of user identifiers inside a short read transaction. Only
(username, user id) pairs leave the transaction, so no store transaction is
held open while the directory is queried.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping

from .stores.base import UserStore, TenantNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentitySnapshot:
    """Identifiers of one page, in load order."""

    offset: int
    has_more: bool
    user_ids_by_username: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def usernames(self) -> List[str]:
        return list(self.user_ids_by_username)

    def __len__(self):
        return len(self.user_ids_by_username)


class SnapshotLoader:
    """Loads pages of user identifiers from a UserStore."""

    def __init__(self, store: UserStore):
        self.store = store

    def load_page(self, tenant_id: str, offset: int, limit: int) -> UserIdentitySnapshot:
        """
        Load one page of identifiers.

        An empty page and an unknown tenant both yield has_more=False.
        Users with a blank username are skipped but still count towards
        has_more, so such a page does not end pagination.

        Args:
            tenant_id: Tenant to read
            offset: Index of the first user
            limit: Page size
        """
        with self.store.transaction() as store:
            try:
                rows = store.list_user_ids_page(tenant_id, offset, limit)
            except TenantNotFoundError:
                logger.warning(f"Tenant not found: {tenant_id}")
                return UserIdentitySnapshot(offset=offset, has_more=False)

        user_ids = {}
        for username, user_id in rows:
            if not username or not username.strip():
                continue
            user_ids[username] = user_id

        return UserIdentitySnapshot(
            offset=offset,
            has_more=bool(rows),
            user_ids_by_username=MappingProxyType(user_ids)
        )
