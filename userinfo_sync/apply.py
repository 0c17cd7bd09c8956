"""
Diff and apply stage.

Writes the lookup results of one page back to the user store inside a
single write transaction. Only attributes that already exist on a user are
updated, and only when the extracted value differs from the stored one.
Users whose sensitive attributes changed get a fresh not-before timestamp
and lose their sessions.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .fetch import LookupResult
from .logging_setup import security_logger
from .snapshot import UserIdentitySnapshot
from .stores.base import UserStore, UserRecord, UserStoreError, TenantNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageOutcome:
    """Counters for one applied page."""

    offset: int
    page_size: int
    changed_users: int = 0
    invalidated_users: int = 0
    failed_users: int = 0


def _as_text(node: Any) -> Optional[str]:
    """Render a JSON scalar as text; containers have no text value."""
    if node is None or isinstance(node, (dict, list)):
        return None
    if isinstance(node, bool):
        return 'true' if node else 'false'
    return str(node)


def extract_value(document: Any, dot_path: str) -> Optional[str]:
    """
    Extract a text value from a parsed JSON document by dot path.

    Walking the path, any array met on the way (including at the terminal
    node) is replaced by its first element. Missing keys, nulls, empty
    arrays and blank strings yield None.

    Args:
        document: Parsed JSON document
        dot_path: Path such as "response.employees.departmentCode"

    Returns:
        Extracted text, or None when there is nothing to write
    """
    if document is None or not dot_path or not dot_path.strip():
        return None

    node = document
    for part in dot_path.split('.'):
        node = _first_if_array(node, dot_path)
        if not isinstance(node, dict):
            return None
        node = node.get(part)
        if node is None:
            return None

    node = _first_if_array(node, dot_path)
    value = _as_text(node)
    if value is None or not value.strip():
        return None
    return value


def _first_if_array(node: Any, dot_path: str) -> Any:
    if not isinstance(node, list):
        return node
    if not node:
        return None
    if len(node) > 1:
        logger.debug(f"Array with {len(node)} elements on path {dot_path}, using the first")
    return node[0]


def diff_user(record: UserRecord, document: Any,
              mapping: Iterable[Tuple[str, str]]) -> Dict[str, Tuple[Optional[str], str]]:
    """
    Compute the attribute changes for one user.

    Keys the user does not already have are never part of the diff.

    Returns:
        Mapping of attribute key to (current value, new value), in mapping order
    """
    changes = {}
    for attribute_key, dot_path in mapping:
        if not record.has_attribute(attribute_key):
            continue
        new_value = extract_value(document, dot_path)
        if new_value is None:
            continue
        current_value = record.get_attribute(attribute_key)
        if current_value == new_value:
            continue
        changes[attribute_key] = (current_value, new_value)
    return changes


class ApplyStage:
    """Applies a page of lookup results to the user store."""

    def __init__(self, store: UserStore, attribute_mapping: Iterable[Tuple[str, str]],
                 invalidate_on_keys: Iterable[str], invalidate_logout: bool = True,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            store: User store
            attribute_mapping: Ordered (attribute key, dot path) pairs
            invalidate_on_keys: Keys whose change invalidates the user's sessions
            invalidate_logout: Also terminate sessions when invalidating
            clock: Returns current epoch time in seconds
        """
        self.store = store
        self.attribute_mapping = list(attribute_mapping)
        self.invalidate_on_keys = frozenset(invalidate_on_keys)
        self.invalidate_logout = invalidate_logout
        self.clock = clock

    def apply(self, tenant_id: str, snapshot: UserIdentitySnapshot,
              results: Mapping[str, LookupResult]) -> PageOutcome:
        """
        Apply one page inside a single write transaction.

        Args:
            tenant_id: Tenant being synced
            snapshot: Identifiers loaded for the page
            results: Lookup results keyed by username

        Returns:
            PageOutcome for the page
        """
        page_size = len(snapshot)
        changed = invalidated = failed = 0
        invalidations = []

        with self.store.transaction() as store:
            if not store.tenant_exists(tenant_id):
                logger.warning(f"Tenant not found during apply: {tenant_id}")
                outcome = PageOutcome(offset=snapshot.offset, page_size=page_size, failed_users=page_size)
                self._log_outcome(tenant_id, outcome)
                return outcome

            now_epoch = int(self.clock())

            for username, user_id in snapshot.user_ids_by_username.items():
                result = results.get(username)
                if result is None or not result.success:
                    failed += 1
                    continue

                try:
                    record = store.get_user(tenant_id, user_id)
                except TenantNotFoundError:
                    record = None
                except UserStoreError as e:
                    logger.warning(f"Could not load user {username} ({user_id}): {e}")
                    failed += 1
                    continue
                if record is None:
                    logger.debug(f"User {username} ({user_id}) disappeared before apply")
                    failed += 1
                    continue

                changes = diff_user(record, result.document, self.attribute_mapping)
                if not changes:
                    continue

                for attribute_key, (_, new_value) in changes.items():
                    record.set_attribute(attribute_key, new_value)
                invalidating = sorted(self.invalidate_on_keys.intersection(changes))

                try:
                    if invalidating:
                        store.set_not_before(tenant_id, record, now_epoch)
                        if self.invalidate_logout:
                            store.terminate_sessions(tenant_id, user_id)
                    store.flush_user(tenant_id, record)
                except UserStoreError as e:
                    logger.error(f"Failed to write user {username} ({user_id}): {e}")
                    failed += 1
                    continue

                changed += 1
                logger.debug(f"User {username}: updated {', '.join(changes)}")
                if invalidating:
                    invalidated += 1
                    invalidations.append((user_id, invalidating))

        for user_id, keys in invalidations:
            security_logger.log_session_invalidation(tenant_id, user_id, keys, self.invalidate_logout)

        outcome = PageOutcome(
            offset=snapshot.offset,
            page_size=page_size,
            changed_users=changed,
            invalidated_users=invalidated,
            failed_users=failed
        )
        self._log_outcome(tenant_id, outcome)
        return outcome

    @staticmethod
    def _log_outcome(tenant_id: str, outcome: PageOutcome):
        logger.info(f"tenant={tenant_id} pageOffset={outcome.offset} pageSize={outcome.page_size} "
                    f"changedUsers={outcome.changed_users} invalidatedUsers={outcome.invalidated_users} "
                    f"failedUsers={outcome.failed_users}")
