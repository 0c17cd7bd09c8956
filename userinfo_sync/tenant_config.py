"""
Per-tenant sync configuration.

Tenants carry flat string attributes. TenantSyncConfig.from_attributes turns
them into an immutable, validated configuration. Malformed values never fail
tenant evaluation: they fall back to defaults and a warning is logged.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, Any, FrozenSet, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = timezone.utc

ATTRIBUTE_PREFIX = 'userinfosync'

K_ENABLED = f'{ATTRIBUTE_PREFIX}.enabled'
K_RUN_AT = f'{ATTRIBUTE_PREFIX}.runAt'
K_WINDOW_MINUTES = f'{ATTRIBUTE_PREFIX}.windowMinutes'
K_BATCH_SIZE = f'{ATTRIBUTE_PREFIX}.batchSize'
K_RESULT_TYPE = f'{ATTRIBUTE_PREFIX}.resultType'
K_HTTP_TIMEOUT_MS = f'{ATTRIBUTE_PREFIX}.httpTimeoutMs'
K_MAX_CONCURRENCY = f'{ATTRIBUTE_PREFIX}.maxConcurrency'
K_RETRY_MAX_ATTEMPTS = f'{ATTRIBUTE_PREFIX}.retry.maxAttempts'
K_RETRY_BASE_BACKOFF_MS = f'{ATTRIBUTE_PREFIX}.retry.baseBackoffMs'
K_TASK_KEY_PREFIX = f'{ATTRIBUTE_PREFIX}.taskKeyPrefix'
K_TIMEZONE = f'{ATTRIBUTE_PREFIX}.timezone'
K_MAPPING_JSON = f'{ATTRIBUTE_PREFIX}.mappingJson'
K_INVALIDATE_ON_KEYS = f'{ATTRIBUTE_PREFIX}.invalidateOnKeys'
K_PER_SUBJECT_TIMEOUT_MS = f'{ATTRIBUTE_PREFIX}.perSubjectTimeoutMs'
K_INVALIDATE_LOGOUT = f'{ATTRIBUTE_PREFIX}.invalidate.logout'

DEFAULT_RUN_AT = '03:00'
DEFAULT_TASK_KEY_PREFIX = 'userinfosync'
DEFAULT_MAPPING = {'deptId': 'response.employees.departmentCode'}
DEFAULT_INVALIDATE_ON_KEYS = 'deptId'

# (default, min, max)
WINDOW_MINUTES_BOUNDS = (3, 0, 120)
BATCH_SIZE_BOUNDS = (500, 1, 5000)
HTTP_TIMEOUT_MS_BOUNDS = (5000, 500, 60_000)
MAX_CONCURRENCY_BOUNDS = (15, 1, 200)
RETRY_MAX_ATTEMPTS_BOUNDS = (3, 0, 10)
RETRY_BASE_BACKOFF_MS_BOUNDS = (250, 0, 10_000)
PER_SUBJECT_TIMEOUT_MS_BOUNDS = (8000, 1000, 120_000)

RESULT_TYPES = ('basic', 'optional')


def _default_timezone() -> tzinfo:
    return datetime.now().astimezone().tzinfo


@dataclass(frozen=True)
class TenantSyncConfig:
    """Validated sync parameters for one tenant."""

    enabled: bool = False
    run_at: str = DEFAULT_RUN_AT
    window_minutes: int = WINDOW_MINUTES_BOUNDS[0]
    batch_size: int = BATCH_SIZE_BOUNDS[0]
    max_concurrency: int = MAX_CONCURRENCY_BOUNDS[0]
    http_timeout_ms: int = HTTP_TIMEOUT_MS_BOUNDS[0]
    per_subject_timeout_ms: int = PER_SUBJECT_TIMEOUT_MS_BOUNDS[0]
    retry_max_attempts: int = RETRY_MAX_ATTEMPTS_BOUNDS[0]
    retry_base_backoff_ms: int = RETRY_BASE_BACKOFF_MS_BOUNDS[0]
    timezone: tzinfo = field(default_factory=_default_timezone)
    attribute_mapping: Tuple[Tuple[str, str], ...] = tuple(DEFAULT_MAPPING.items())
    invalidate_on_keys: FrozenSet[str] = frozenset({DEFAULT_INVALIDATE_ON_KEYS})
    task_key_prefix: str = DEFAULT_TASK_KEY_PREFIX
    result_type: str = 'basic'
    invalidate_logout: bool = True

    @classmethod
    def from_attributes(cls, attributes: Optional[Mapping[str, Any]],
                        tenant_id: str = '') -> 'TenantSyncConfig':
        """
        Build configuration from flat tenant attributes.

        Args:
            attributes: Tenant attributes (string values)
            tenant_id: Tenant identifier, used in warnings only

        Returns:
            TenantSyncConfig with every bounded field clamped
        """
        attrs = dict(attributes or {})
        label = tenant_id or 'unknown'

        def bounded(key, bounds):
            default, low, high = bounds
            return _clamp(_parse_int(attrs.get(key), default, key, label), low, high)

        result_type_raw = str(attrs.get(K_RESULT_TYPE, 'basic')).strip().lower()
        result_type = result_type_raw if result_type_raw in RESULT_TYPES else 'basic'

        return cls(
            enabled=_parse_bool(attrs.get(K_ENABLED), False),
            run_at=_normalize_run_at(attrs.get(K_RUN_AT), DEFAULT_RUN_AT, label),
            window_minutes=bounded(K_WINDOW_MINUTES, WINDOW_MINUTES_BOUNDS),
            batch_size=bounded(K_BATCH_SIZE, BATCH_SIZE_BOUNDS),
            max_concurrency=bounded(K_MAX_CONCURRENCY, MAX_CONCURRENCY_BOUNDS),
            http_timeout_ms=bounded(K_HTTP_TIMEOUT_MS, HTTP_TIMEOUT_MS_BOUNDS),
            per_subject_timeout_ms=bounded(K_PER_SUBJECT_TIMEOUT_MS, PER_SUBJECT_TIMEOUT_MS_BOUNDS),
            retry_max_attempts=bounded(K_RETRY_MAX_ATTEMPTS, RETRY_MAX_ATTEMPTS_BOUNDS),
            retry_base_backoff_ms=bounded(K_RETRY_BASE_BACKOFF_MS, RETRY_BASE_BACKOFF_MS_BOUNDS),
            timezone=_parse_timezone(attrs.get(K_TIMEZONE), label),
            attribute_mapping=tuple(_parse_mapping(attrs.get(K_MAPPING_JSON), label).items()),
            invalidate_on_keys=_parse_csv(attrs.get(K_INVALIDATE_ON_KEYS, DEFAULT_INVALIDATE_ON_KEYS)),
            task_key_prefix=_non_blank(attrs.get(K_TASK_KEY_PREFIX), DEFAULT_TASK_KEY_PREFIX),
            result_type=result_type,
            invalidate_logout=_parse_bool(attrs.get(K_INVALIDATE_LOGOUT), True),
        )

    @property
    def mapping(self) -> Dict[str, str]:
        """Attribute mapping as an ordered dict."""
        return dict(self.attribute_mapping)

    def is_now_in_window(self, now: datetime) -> bool:
        """
        Check whether now falls within window_minutes of run_at.

        The distance is measured against run_at on the same day, the
        previous day and the next day in the tenant timezone, so windows
        that straddle midnight match on both sides.

        Args:
            now: Timezone-aware current time
        """
        hour_minute = _parse_run_at(self.run_at)
        if hour_minute is None:
            return False

        zoned_now = now.astimezone(self.timezone)
        now_utc = now.astimezone(UTC)
        hour, minute = hour_minute

        distances = []
        for day_offset in (0, -1, 1):
            day = zoned_now.date() + timedelta(days=day_offset)
            # fold=0: gap times resolve forward, ambiguous times to the first occurrence
            target = datetime(day.year, day.month, day.day, hour, minute, tzinfo=self.timezone)
            elapsed = (now_utc - target.astimezone(UTC)).total_seconds()
            # Whole minutes of elapsed time, truncated
            distances.append(int(abs(elapsed) // 60))
        return min(distances) <= self.window_minutes

    def day_key(self, now: datetime) -> str:
        """Return YYYYMMDD for now in the tenant timezone."""
        return now.astimezone(self.timezone).strftime('%Y%m%d')

    def build_task_key(self, tenant_id: str, day_key: str) -> str:
        return f"{self.task_key_prefix}:{tenant_id}:{day_key}"


def _parse_int(value: Any, fallback: int, key: str, tenant_label: str) -> int:
    if value is None or str(value).strip() == '':
        return fallback
    try:
        return int(str(value).strip())
    except ValueError:
        logger.warning(f"Invalid integer for {key} on tenant {tenant_label}: '{value}', "
                       f"fallback to {fallback}")
        return fallback


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _parse_bool(value: Any, fallback: bool) -> bool:
    if value is None or str(value).strip() == '':
        return fallback
    return str(value).strip().lower() == 'true'


def _non_blank(value: Any, fallback: str) -> str:
    if value is None or str(value).strip() == '':
        return fallback
    return str(value).strip()


def _parse_run_at(value: Any) -> Optional[Tuple[int, int]]:
    """Parse HH:mm into (hour, minute), or None if malformed."""
    if value is None:
        return None
    parts = str(value).strip().split(':')
    if len(parts) != 2:
        return None
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour, minute


def _normalize_run_at(value: Any, fallback: str, tenant_label: str) -> str:
    if value is None:
        return fallback
    hour_minute = _parse_run_at(value)
    if hour_minute is None:
        logger.warning(f"Invalid runAt '{value}' on tenant {tenant_label}, fallback to {fallback}")
        return fallback
    return f"{hour_minute[0]:02d}:{hour_minute[1]:02d}"


def _parse_timezone(value: Any, tenant_label: str) -> tzinfo:
    fallback = _default_timezone()
    if value is None or str(value).strip() == '':
        return fallback
    try:
        return ZoneInfo(str(value).strip())
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Invalid timezone '{value}' on tenant {tenant_label} ({e}), "
                       f"fallback to {fallback}")
        return fallback


def _parse_mapping(value: Any, tenant_label: str) -> Dict[str, str]:
    """
    Parse the JSON attribute mapping, preserving key order.

    A blank, malformed or non-object mapping falls back to DEFAULT_MAPPING.
    """
    if value is None or str(value).strip() == '':
        return dict(DEFAULT_MAPPING)
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        parsed = None

    if not isinstance(parsed, dict) or not all(isinstance(v, str) for v in parsed.values()):
        logger.warning(f"Invalid {K_MAPPING_JSON} on tenant {tenant_label}, using fallback mapping")
        return dict(DEFAULT_MAPPING)
    return {str(k): v for k, v in parsed.items()}


def _parse_csv(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    return frozenset(part.strip() for part in str(value).split(',') if part.strip())
