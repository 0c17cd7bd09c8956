"""
Shared HTTP plumbing for the directory client and REST-backed user stores.

This module holds SSL context construction, authentication header setup
(bearer token, basic, OAuth2 client credentials) and a single-request
primitive built on http.client.
"""

import json
import ssl
import time
import base64
import logging
from typing import Dict, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection

logger = logging.getLogger(__name__)


class HTTPClientError(Exception):
    """Raised when the HTTP client cannot be configured or authenticated."""
    pass


class HTTPClientBase:
    """
    Minimal HTTP client over http.client.

    A new connection is opened for every request, so one instance can be
    shared by worker threads.
    """

    def __init__(self, name: str, base_url: str, config: Optional[Dict[str, Any]] = None,
                 timeout_seconds: float = 30.0):
        """
        Initialize HTTP client.

        Args:
            name: Label used in log messages
            base_url: Base URL; may carry a path and a query string
            config: Optional settings (verify_ssl, truststore_*, auth)
            timeout_seconds: Socket timeout for each request
        """
        self.name = name
        self.base_url = base_url
        self.config = config or {}
        self.auth_config = self.config.get('auth') or {}
        self.verify_ssl = self.config.get('verify_ssl', True)
        self.timeout_seconds = timeout_seconds

        self.parsed_url = urlparse(self.base_url)
        if self.parsed_url.scheme not in ('http', 'https') or not self.parsed_url.netloc:
            raise HTTPClientError(f"Invalid base URL for {self.name}: {self.base_url}")
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')
        self.base_query = self.parsed_url.query

        self.ssl_context = None
        self.auth_headers = {}
        self._token_expires_at = 0.0

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates (PEM or PKCS12)."""
        truststore_type = str(self.config.get('truststore_type', 'PEM')).upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise HTTPClientError(f"Unsupported truststore type: {truststore_type}")

        except HTTPClientError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise HTTPClientError(f"Truststore loading failed: {e}")

    def _setup_authentication(self):
        """Set up static authentication headers based on configuration."""
        auth_method = str(self.auth_config.get('method', '')).lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if not (username and password):
                raise HTTPClientError(f"Basic auth configured but missing username or password for {self.name}")
            credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if not token:
                raise HTTPClientError(f"Token auth configured but missing token for {self.name}")
            self.auth_headers['Authorization'] = f"Bearer {token}"

        elif auth_method == 'oauth2':
            required = ('client_id', 'client_secret', 'token_url')
            missing = [field for field in required if not self.auth_config.get(field)]
            if missing:
                raise HTTPClientError(f"OAuth2 auth for {self.name} missing fields: {', '.join(missing)}")

        elif auth_method:
            raise HTTPClientError(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self):
        """
        Retrieve an OAuth2 access token using the client credentials flow.

        Raises:
            HTTPClientError: If the token endpoint rejects the request
        """
        token_url = urlparse(self.auth_config['token_url'])
        token_data = {
            'grant_type': 'client_credentials',
            'client_id': self.auth_config['client_id'],
            'client_secret': self.auth_config['client_secret'],
        }
        scope = self.auth_config.get('scope')
        if scope:
            token_data['scope'] = scope

        conn = self._new_connection(token_url.scheme, token_url.netloc)
        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            conn.request('POST', token_url.path or '/', urlencode(token_data), {
                'Content-Type': 'application/x-www-form-urlencoded',
                'Accept': 'application/json'
            })
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')

            if response.status != 200:
                raise HTTPClientError(f"OAuth2 token request failed for {self.name}: "
                                      f"{response.status} {response.reason}")
            try:
                token_response = json.loads(response_data)
            except json.JSONDecodeError as e:
                raise HTTPClientError(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")

            access_token = token_response.get('access_token')
            if not access_token:
                raise HTTPClientError(f"OAuth2 response missing access_token for {self.name}")

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            # 60 second buffer before expiry
            expires_in = int(token_response.get('expires_in', 300))
            self._token_expires_at = time.time() + expires_in - 60
            logger.info(f"Obtained OAuth2 token for {self.name}")
        except (ConnectionError, OSError) as e:
            raise HTTPClientError(f"OAuth2 token request error for {self.name}: {e}")
        finally:
            conn.close()

    def _ensure_authenticated(self):
        """Refresh the OAuth2 token when it is missing or about to expire."""
        if str(self.auth_config.get('method', '')).lower() != 'oauth2':
            return
        if time.time() >= self._token_expires_at:
            self._oauth2_get_token()

    def _new_connection(self, scheme: str, netloc: str) -> Union[HTTPSConnection, HTTPConnection]:
        if scheme == 'https':
            return HTTPSConnection(netloc, context=self.ssl_context, timeout=self.timeout_seconds)
        return HTTPConnection(netloc, timeout=self.timeout_seconds)

    def build_path(self, path: str = '', query: Optional[Dict[str, Any]] = None) -> str:
        """
        Join a relative path and query parameters onto the base URL.

        Query parameters are appended after any query already present
        in the base URL.
        """
        full_path = self.base_path
        if path:
            full_path = f"{full_path}/{path.lstrip('/')}"
        full_path = full_path or '/'

        query_parts = [part for part in (self.base_query, urlencode(query or {})) if part]
        if query_parts:
            full_path = f"{full_path}?{'&'.join(query_parts)}"
        return full_path

    def send(self, method: str, path: str = '', query: Optional[Dict[str, Any]] = None,
             body: Optional[Any] = None, headers: Optional[Dict[str, str]] = None,
             decode_errors: str = 'replace') -> Tuple[int, str]:
        """
        Perform one HTTP request.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            query: Query parameters
            body: JSON-serializable request body
            headers: Additional headers
            decode_errors: Codec error handler for the UTF-8 response body;
                'strict' raises UnicodeDecodeError instead of substituting

        Returns:
            Tuple of (status code, decoded response body)

        Raises:
            OSError: On connection, timeout or socket errors
            HTTPClientError: If OAuth2 token retrieval fails
            UnicodeDecodeError: If decode_errors is 'strict' and the body is not UTF-8
        """
        self._ensure_authenticated()

        request_headers = dict(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers.setdefault('Content-Type', 'application/json')

        full_path = self.build_path(path, query)
        conn = self._new_connection(self.parsed_url.scheme, self.host)
        try:
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8', errors=decode_errors)
            logger.debug(f"Response status: {response.status} {response.reason}")
            return response.status, response_data
        finally:
            conn.close()
