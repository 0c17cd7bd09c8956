"""
Directory lookup client.

Fetches the raw identity document for one subject from the external
directory service. Every attempt is classified as success, retryable
failure or non-retryable failure; retryable failures are retried with
capped exponential backoff and jitter.
"""

import os
import time
import logging
from typing import Callable, Dict, Any, Optional
from http.client import HTTPException

from .http_client import HTTPClientBase, HTTPClientError
from .config import ConfigurationError
from .retry import (
    RetryableLookupError, NonRetryableLookupError, is_retryable_status,
    retry_call, uniform_jitter
)

logger = logging.getLogger(__name__)

# Floor applied to the configured HTTP timeout
MIN_HTTP_TIMEOUT_MS = 500

# Response bodies are truncated to this length in error messages
ERROR_BODY_LIMIT = 200

ENV_OVERRIDES = {
    'base_url': 'DIRECTORY_API_URL',
    'system_id': 'DIRECTORY_SYSTEM_ID',
    'token': 'DIRECTORY_API_TOKEN',
}


def _safe_trim(text: Optional[str]) -> str:
    if not text:
        return ''
    return text[:ERROR_BODY_LIMIT]


class DirectoryClient:
    """
    Client for the external identity directory.

    Requests are `POST <base_url>?user_id=<subject>` with a JSON body
    carrying the result type, a `system-id` header and bearer
    authentication.
    """

    def __init__(self, directory_config: Dict[str, Any], http_timeout_ms: int = 5000,
                 result_type: str = 'basic',
                 sleep: Callable[[float], None] = time.sleep,
                 jitter: Callable[[], float] = uniform_jitter):
        """
        Initialize directory client.

        Args:
            directory_config: `directory` configuration section
            http_timeout_ms: Per-request socket timeout (floored at 500ms)
            result_type: Value sent as `resultType` in the request body
            sleep: Sleeper used between retry attempts
            jitter: Source of backoff jitter factors

        Raises:
            ConfigurationError: If base_url, system_id or token is missing
        """
        settings = dict(directory_config or {})
        for key, env_var in ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                settings[key] = env_value

        missing = [key for key in ('base_url', 'system_id', 'token') if not str(settings.get(key) or '').strip()]
        if missing:
            raise ConfigurationError(f"Missing directory settings: {', '.join(missing)}")

        self.system_id = settings['system_id']
        self.result_type = result_type
        self.timeout_ms = max(MIN_HTTP_TIMEOUT_MS, int(http_timeout_ms))
        self.sleep = sleep
        self.jitter = jitter

        settings['auth'] = {'method': 'bearer', 'token': settings['token']}
        try:
            self.http = HTTPClientBase(
                name='directory',
                base_url=settings['base_url'],
                config=settings,
                timeout_seconds=self.timeout_ms / 1000.0
            )
        except HTTPClientError as e:
            raise ConfigurationError(str(e))

    def fetch(self, subject_id: str, max_attempts: int, base_backoff_ms: int) -> str:
        """
        Fetch the raw JSON document for one subject.

        Args:
            subject_id: Directory-facing identifier (the username)
            max_attempts: Maximum attempts including the first
            base_backoff_ms: Base backoff delay in milliseconds

        Returns:
            Response body, verbatim

        Raises:
            NonRetryableLookupError: On the first non-retryable failure
            RetryableLookupError: When retryable failures exhaust max_attempts
        """
        return retry_call(
            lambda: self._request_once(subject_id),
            max_attempts=max_attempts,
            base_backoff_ms=base_backoff_ms,
            sleep=self.sleep,
            jitter=self.jitter,
            operation_name=f"Directory lookup for {subject_id}"
        )

    def _request_once(self, subject_id: str) -> str:
        try:
            status, body = self.http.send(
                'POST',
                query={'user_id': subject_id},
                body={'resultType': self.result_type},
                headers={
                    'Content-Type': 'application/json',
                    'system-id': self.system_id,
                },
                decode_errors='strict'
            )
        except (OSError, HTTPException) as e:
            # socket.timeout is an OSError subclass
            raise RetryableLookupError(f"I/O error: {type(e).__name__}: {e}")

        if 200 <= status <= 299:
            return body

        if is_retryable_status(status):
            raise RetryableLookupError(f"retryable status={status}", status_code=status)

        raise NonRetryableLookupError(f"non-retry status={status} body={_safe_trim(body)}",
                                      status_code=status)
