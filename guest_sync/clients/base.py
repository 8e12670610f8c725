"""
Base HTTP API client and common functionality.

This module provides the HTTP plumbing shared by the directory and source
clients: connection handling, SSL truststores, bearer and OAuth2 client
credentials authentication, JSON encoding, and translation of HTTP failures
into tagged errors that the retry policy can classify.
"""

import json
import ssl
import time
import socket
import threading
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Any, List, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from guest_sync.retry import RetryableError, ErrorKind, is_retryable_status

logger = logging.getLogger(__name__)

LOG_TRUNCATE = 800
TOKEN_EXPIRY_BUFFER_SECONDS = 60


class ApiError(RetryableError):
    """Raised when an API call fails. Carries the response body when there was one."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.IO,
                 status_code: Optional[int] = None, retry_after: float = 0.0, body: str = ''):
        super().__init__(message, kind=kind, status_code=status_code, retry_after=retry_after)
        self.body = body or ''


class ApiAuthenticationError(ApiError):
    """Raised when authentication to an API fails."""

    def __init__(self, message: str, status_code: Optional[int] = 401, body: str = ''):
        super().__init__(message, kind=ErrorKind.CLIENT_ERROR, status_code=status_code, body=body)


def truncate(text: Optional[str], limit: int = LOG_TRUNCATE) -> str:
    """Shorten a response body for log messages."""
    if not text:
        return ''
    if len(text) <= limit:
        return text
    return text[:limit] + '...(truncated)'


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> float:
    """
    Parse a Retry-After header value into seconds.

    Accepts delta-seconds or an HTTP date. Returns 0 when absent or unparsable.
    """
    if not value or not value.strip():
        return 0.0
    value = value.strip()

    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return 0.0
    if when is None:
        return 0.0
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class ApiClientBase:
    """
    Base class for HTTP API clients.

    Connections are kept per thread, so a single client instance can be shared
    by the worker pool. Responses are parsed as JSON.
    """

    def __init__(self, config: Dict[str, Any], name: str):
        """
        Initialize API client.

        Args:
            config: Client configuration dictionary (base_url, auth, TLS settings)
            name: Client name used in log messages
        """
        self.config = config
        self.name = name
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout_seconds', 60)

        # Parse base URL
        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.ssl_context = None
        self._local = threading.local()
        # Every thread's connection, so close_connection can reach all of them
        self._connections: List[Union[HTTPSConnection, HTTPConnection]] = []
        self._connections_lock = threading.Lock()

        # Authentication state
        self.auth_headers: Dict[str, str] = {}
        self._token_lock = threading.Lock()
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
        """Load custom truststore/CA certificates."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise ApiError(f"Unsupported truststore type: {truststore_type}", kind=ErrorKind.CLIENT_ERROR)

        except ApiError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise ApiError(f"Truststore loading failed: {e}", kind=ErrorKind.CLIENT_ERROR)

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'oauth2':
            client_id = self.auth_config.get('client_id')
            client_secret = self.auth_config.get('client_secret')
            token_url = self.auth_config.get('token_url')

            if not all([client_id, client_secret, token_url]):
                logger.error(f"OAuth2 auth configured but missing required fields (client_id, client_secret, token_url) for {self.name}")
            else:
                logger.debug(f"OAuth2 authentication configured for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self) -> bool:
        """
        Retrieve OAuth2 access token using client credentials flow.

        Returns:
            True if token was successfully obtained
        """
        client_id = self.auth_config.get('client_id')
        client_secret = self.auth_config.get('client_secret')
        token_url = self.auth_config.get('token_url')
        scope = self.auth_config.get('scope', '')

        if not all([client_id, client_secret, token_url]):
            logger.error(f"OAuth2 configuration incomplete for {self.name}")
            return False

        parsed_token_url = urlparse(token_url)
        if parsed_token_url.scheme == 'https':
            token_conn = HTTPSConnection(parsed_token_url.netloc, context=self.ssl_context, timeout=30)
        else:
            token_conn = HTTPConnection(parsed_token_url.netloc, timeout=30)

        try:
            token_data = {
                'grant_type': 'client_credentials',
                'client_id': client_id,
                'client_secret': client_secret
            }
            if scope:
                token_data['scope'] = scope

            token_headers = {
                'Content-Type': 'application/x-www-form-urlencoded',
                'Accept': 'application/json'
            }

            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), token_headers)

            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8', errors='replace')

            if response.status != 200:
                logger.error(f"OAuth2 token request failed for {self.name}: {response.status} {response.reason}")
                return False

            try:
                token_response = json.loads(response_data)
            except json.JSONDecodeError as e:
                logger.error(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")
                return False

            access_token = token_response.get('access_token')
            if not access_token:
                logger.error(f"OAuth2 response missing access_token for {self.name}")
                return False

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            expires_in = int(token_response.get('expires_in') or 3600)
            self._token_expires_at = time.time() + expires_in - TOKEN_EXPIRY_BUFFER_SECONDS
            logger.info(f"Successfully obtained OAuth2 token for {self.name}")
            return True

        except (OSError, HTTPException) as e:
            logger.error(f"OAuth2 token request error for {self.name}: {e}")
            return False

        finally:
            token_conn.close()

    def _is_oauth2_token_valid(self) -> bool:
        """Check if OAuth2 token is still valid."""
        return 'Authorization' in self.auth_headers and time.time() < self._token_expires_at

    def authenticate(self) -> bool:
        """
        Make sure usable credentials are in place.

        Returns:
            True if authentication successful
        """
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'oauth2':
            with self._token_lock:
                if self._is_oauth2_token_valid():
                    return True
                return self._oauth2_get_token()

        if auth_method in ('token', 'bearer'):
            return 'Authorization' in self.auth_headers

        return not auth_method

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create the HTTP connection of the calling thread."""
        connection = getattr(self._local, 'connection', None)
        if connection is not None:
            return connection

        if self.parsed_url.scheme == 'https':
            connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            connection = HTTPConnection(self.host, timeout=self.timeout)

        self._local.connection = connection
        with self._connections_lock:
            self._connections.append(connection)
        return connection

    def _close_quietly(self, connection) -> None:
        try:
            connection.close()
        except OSError as e:
            logger.debug(f"Error closing connection for {self.name}: {e}")

    def _drop_connection(self):
        connection = getattr(self._local, 'connection', None)
        self._local.connection = None
        if connection is not None:
            with self._connections_lock:
                if connection in self._connections:
                    self._connections.remove(connection)
            self._close_quietly(connection)

    def build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Build a request path relative to base_url.

        Absolute URLs (paging links) are accepted as-is apart from the host.
        """
        if path.startswith('http://') or path.startswith('https://'):
            parsed = urlparse(path)
            full_path = parsed.path + (f"?{parsed.query}" if parsed.query else '')
        elif self.base_path and path.startswith(self.base_path + '/'):
            full_path = path
        else:
            full_path = self.base_path + '/' + path.lstrip('/')

        if params:
            separator = '&' if '?' in full_path else '?'
            full_path += separator + urlencode(params, safe="$',", quote_via=quote)
        return full_path

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: Endpoint path relative to base_url, or an absolute paging URL
            body: Request body data, sent as JSON
            headers: Additional headers
            params: Query parameters

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            ApiAuthenticationError: On 401/403 after a token refresh attempt
            ApiError: On any other failure, tagged with status and Retry-After
        """
        full_path = self.build_path(path, params)

        if not self.authenticate():
            raise ApiAuthenticationError(f"Authentication failed for {self.name}", status_code=None)

        request_body = None
        base_headers = {'Accept': 'application/json'}
        if body is not None:
            request_body = json.dumps(body)
            base_headers['Content-Type'] = 'application/json'
        if headers:
            base_headers.update(headers)

        max_auth_retries = 1
        for auth_attempt in range(max_auth_retries + 1):
            request_headers = dict(base_headers)
            request_headers.update(self.auth_headers)

            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)

                response = conn.getresponse()
                response_data = response.read().decode('utf-8', errors='replace')
                retry_after_header = response.getheader('Retry-After')
            except socket.timeout as e:
                self._drop_connection()
                raise ApiError(f"Timeout calling {self.name}: {e}", kind=ErrorKind.TIMEOUT)
            except (OSError, HTTPException) as e:
                self._drop_connection()
                raise ApiError(f"Connection error to {self.name}: {e}", kind=ErrorKind.IO)

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt < max_auth_retries:
                if self.auth_config.get('method', '').lower() == 'oauth2':
                    logger.info(f"401 error received, attempting to refresh OAuth2 token for {self.name}")
                    with self._token_lock:
                        self._token_expires_at = 0.0
                        refreshed = self._oauth2_get_token()
                    if refreshed:
                        continue

            if response.status in (401, 403):
                raise ApiAuthenticationError(f"Authentication failed for {self.name}: HTTP {response.status}",
                                             status_code=response.status, body=response_data)

            if response.status >= 400:
                retry_after = parse_retry_after(retry_after_header) if is_retryable_status(response.status) else 0.0
                error = ApiError.from_status(
                    response.status,
                    f"HTTP {response.status} {response.reason} from {self.name} for {method} {full_path}",
                    retry_after=retry_after
                )
                error.body = response_data
                raise error

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise ApiError(f"Invalid JSON response from {self.name}: {e}",
                               kind=ErrorKind.CLIENT_ERROR, status_code=None, body=response_data)

        raise ApiAuthenticationError(f"Request failed after {max_auth_retries + 1} attempts for {self.name}")

    def close_connection(self):
        """Close the HTTP connections opened by every thread."""
        self._local.connection = None
        with self._connections_lock:
            connections = list(self._connections)
            self._connections.clear()
        for connection in connections:
            self._close_quietly(connection)
        if connections:
            logger.debug(f"Closed {len(connections)} connection(s) for {self.name}")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
