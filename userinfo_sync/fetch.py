"""
Bounded-concurrency fetch stage.

Fans directory lookups for one page out over a fixed-size thread pool. The
pool lives for a whole tenant sync and is reused across pages. Results are
collected with a per-subject wait timeout that is independent of the HTTP
client's own timeout, and every failure is converted into a LookupResult so
that one subject can never abort the page.
"""

import json
import logging
import threading
from collections import Counter, OrderedDict
from concurrent.futures import ThreadPoolExecutor, Future, TimeoutError as FutureTimeoutError, wait
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from .retry import RetryableLookupError, NonRetryableLookupError

logger = logging.getLogger(__name__)

# Floor applied to the per-subject wait timeout
MIN_PER_SUBJECT_TIMEOUT_MS = 1000

# Pool shutdown: graceful wait, then forced cancellation and a final wait
SHUTDOWN_GRACE_SECONDS = 10.0
SHUTDOWN_FORCE_SECONDS = 5.0


class FailureKind:
    RETRYABLE = 'retryable'
    NON_RETRYABLE = 'non_retryable'
    TIMEOUT = 'timeout'
    PARSE = 'parse'
    ERROR = 'error'


@dataclass(frozen=True)
class LookupResult:
    """Outcome of one subject's directory lookup."""

    username: str
    success: bool
    raw_payload: Optional[str] = None
    document: Any = None
    failure_kind: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, username: str, raw_payload: str, document: Any) -> 'LookupResult':
        return cls(username=username, success=True, raw_payload=raw_payload, document=document)

    @classmethod
    def fail(cls, username: str, kind: str, error: Optional[BaseException] = None) -> 'LookupResult':
        return cls(username=username, success=False, failure_kind=kind, error=error)


def classify_failure(error: BaseException) -> str:
    """Map an exception raised by a lookup to a FailureKind."""
    if isinstance(error, NonRetryableLookupError):
        return FailureKind.NON_RETRYABLE
    if isinstance(error, RetryableLookupError):
        return FailureKind.RETRYABLE
    if isinstance(error, (FutureTimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(error, (json.JSONDecodeError, UnicodeDecodeError)):
        return FailureKind.PARSE
    return FailureKind.ERROR


class FetchStage:
    """
    Runs directory lookups for a page on a shared worker pool.

    Use as a context manager, or call start() and shutdown() explicitly.
    """

    def __init__(self, client, max_concurrency: int, per_subject_timeout_ms: int,
                 retry_max_attempts: int, retry_base_backoff_ms: int):
        """
        Args:
            client: Object with fetch(subject_id, max_attempts, base_backoff_ms) -> str
            max_concurrency: Worker pool size
            per_subject_timeout_ms: Wait budget per subject (floored at 1000ms)
            retry_max_attempts: Passed through to the client
            retry_base_backoff_ms: Passed through to the client
        """
        self.client = client
        self.max_concurrency = max(1, int(max_concurrency))
        self.per_subject_timeout_ms = max(MIN_PER_SUBJECT_TIMEOUT_MS, int(per_subject_timeout_ms))
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_backoff_ms = retry_base_backoff_ms

        self._pool = None
        self._outstanding = set()
        self._outstanding_lock = threading.Lock()

    def start(self) -> 'FetchStage':
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=self.max_concurrency,
                                            thread_name_prefix='userinfo-fetch')
        return self

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def _lookup(self, username: str) -> LookupResult:
        """Unit of work executed on a pool thread. Never raises."""
        try:
            raw = self.client.fetch(username, self.retry_max_attempts, self.retry_base_backoff_ms)
        except Exception as e:
            return LookupResult.fail(username, classify_failure(e), e)

        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as e:
            return LookupResult.fail(username, FailureKind.PARSE, e)
        return LookupResult.ok(username, raw, document)

    def _track(self, future: Future):
        with self._outstanding_lock:
            self._outstanding.add(future)

        def _done(f):
            with self._outstanding_lock:
                self._outstanding.discard(f)

        future.add_done_callback(_done)

    def fetch_all(self, usernames: Iterable[str]) -> Dict[str, LookupResult]:
        """
        Look up every username of a page.

        Args:
            usernames: Subjects in page order

        Returns:
            Ordered mapping of username to LookupResult, one entry per username
        """
        if self._pool is None:
            raise RuntimeError("FetchStage.start() must be called before fetch_all()")

        futures = OrderedDict()
        for username in usernames:
            future = self._pool.submit(self._lookup, username)
            self._track(future)
            futures[username] = future

        timeout_seconds = self.per_subject_timeout_ms / 1000.0
        results = OrderedDict()
        for username, future in futures.items():
            try:
                results[username] = future.result(timeout=timeout_seconds)
            except FutureTimeoutError as e:
                # Running workers cannot be interrupted; the HTTP timeout bounds them
                future.cancel()
                logger.debug(f"Lookup for {username} exceeded {self.per_subject_timeout_ms} ms")
                results[username] = LookupResult.fail(username, FailureKind.TIMEOUT, e)
            except Exception as e:
                results[username] = LookupResult.fail(username, classify_failure(e), e)

        if results:
            kinds = Counter(r.failure_kind for r in results.values() if not r.success)
            succeeded = sum(1 for r in results.values() if r.success)
            summary = ', '.join(f"{kind}={count}" for kind, count in sorted(kinds.items()))
            logger.debug(f"Fetched {len(results)} subjects: ok={succeeded}" + (f", {summary}" if summary else ''))

        return results

    def shutdown(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS,
                 force_seconds: float = SHUTDOWN_FORCE_SECONDS):
        """
        Stop the worker pool.

        Waits up to grace_seconds for in-flight lookups, then cancels queued
        work and waits up to force_seconds more before giving up on
        stragglers.
        """
        pool = self._pool
        if pool is None:
            return
        self._pool = None

        with self._outstanding_lock:
            outstanding = set(self._outstanding)

        _, not_done = wait(outstanding, timeout=grace_seconds)
        if not not_done:
            pool.shutdown(wait=True)
            return

        logger.info(f"{len(not_done)} lookups still running after {grace_seconds}s, cancelling")
        pool.shutdown(wait=False, cancel_futures=True)
        _, still_running = wait(not_done, timeout=force_seconds)
        if still_running:
            logger.warning(f"Fetch pool did not terminate cleanly: {len(still_running)} lookups still running")
