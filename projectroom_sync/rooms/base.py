"""
Base room service interface and common HTTPS functionality.

This module defines the abstract base class every room service integration
implements, along with the shared HTTPS/JSON client, bearer-token handling
and the error types the reconciliation engine relies on.
"""

import json
import ssl
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from http.client import HTTPSConnection, HTTPException
from typing import Dict, Any, Iterable, Optional, Set
from urllib.parse import urlparse, urlencode

from projectroom_sync.retry import (
    RetryPolicy,
    retry_call,
    is_retryable_error,
    create_retry_callback,
    MaxRetriesExceeded,
)

logger = logging.getLogger(__name__)


class RoomServiceError(Exception):
    """Base exception for room service errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errcode: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errcode = errcode


class RoomServiceUnavailable(RoomServiceError):
    """Raised when the room service cannot be reached or the service account cannot log in."""

    def __init__(self, message: str, status_code: Optional[int] = None, errcode: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status_code=status_code, errcode=errcode)
        # Seconds the server asked us to wait before trying again
        self.retry_after = retry_after


class MembershipChangeError(RoomServiceError):
    """Raised when a single invite or removal fails."""

    def __init__(self, operation: str, user_id: str, room_id: str, cause: Exception):
        super().__init__(
            f"{operation} of {user_id} in {room_id} failed: {cause}",
            status_code=getattr(cause, 'status_code', None),
            errcode=getattr(cause, 'errcode', None)
        )
        self.operation = operation
        self.user_id = user_id
        self.room_id = room_id
        self.cause = cause


@dataclass(frozen=True)
class RoomHandle:
    """A room bound to a project."""

    room_id: str
    alias: Optional[str] = None
    created: bool = False


class RoomServiceBase(ABC):
    """
    Abstract base class for room service integrations.

    Holds one HTTPS connection to the service, reused across ticks and
    reopened on demand after a transport failure. Subclasses implement login
    and the room operations in terms of :meth:`request`.
    """

    def __init__(self, config: Dict[str, Any], cancel_event: Optional[threading.Event] = None):
        """
        Initialize room service client.

        Args:
            config: ``room_service`` configuration dictionary
            cancel_event: Ends retry waits early once set
        """
        self.config = config
        self.name = config.get('name', config.get('module', 'room_service'))
        self.base_url = config['homeserver_url']
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('request_timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        if self.parsed_url.scheme != 'https':
            raise RoomServiceError(f"Room service URL must use https: {self.base_url}")
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.retry_policy = RetryPolicy.from_config(config.get('error_handling', {}))
        self.cancel_event = cancel_event

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}
        self.authenticated = False

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context; certificates are checked against the host's trusted roots."""
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

    def _get_connection(self) -> HTTPSConnection:
        """Get or create the HTTPS connection."""
        if self.connection is None:
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        return self.connection

    def set_access_token(self, token: Optional[str]):
        """Use ``token`` as bearer credential for subsequent requests."""
        if token:
            self.auth_headers['Authorization'] = f"Bearer {token}"
            self.authenticated = True
        else:
            self.auth_headers.pop('Authorization', None)
            self.authenticated = False

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                query: Optional[Dict[str, Any]] = None, authenticated: bool = True) -> Dict[str, Any]:
        """
        Make a JSON request to the room service.

        Transient failures (transport errors, 429, 5xx) are retried. A 401 on an
        authenticated request triggers one fresh login before giving up.

        Args:
            method: HTTP method
            path: API path relative to the configured base URL
            body: JSON body
            query: Query string parameters
            authenticated: Send the bearer token and log in first if needed

        Returns:
            Decoded JSON response

        Raises:
            RoomServiceUnavailable: Transport or authentication failure
            RoomServiceError: Any other error response
        """
        if authenticated and not self.authenticated:
            self._login_or_fail()

        try:
            return self._request_with_retry(method, path, body, query, authenticated)
        except RoomServiceError as e:
            if not (authenticated and e.status_code == 401):
                raise
            logger.info(f"Access token rejected by {self.name}, logging in again")
            self.set_access_token(None)
            self._login_or_fail()

        try:
            return self._request_with_retry(method, path, body, query, authenticated)
        except RoomServiceError as e:
            if e.status_code == 401:
                raise RoomServiceUnavailable(f"Authentication failed for {self.name}", status_code=401)
            raise

    def _login_or_fail(self):
        if not self.authenticate():
            raise RoomServiceUnavailable(f"Authentication failed for {self.name}")

    def _request_with_retry(self, method, path, body, query, authenticated) -> Dict[str, Any]:
        try:
            return retry_call(
                self._send,
                (method, path, body, query, authenticated),
                policy=self.retry_policy,
                exceptions=(RoomServiceUnavailable,),
                should_retry=is_retryable_error,
                on_retry=create_retry_callback(f"{self.name} {method} request"),
                cancel_event=self.cancel_event
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception

    def _send(self, method: str, path: str, body: Optional[Dict],
              query: Optional[Dict[str, Any]], authenticated: bool) -> Dict[str, Any]:
        """Perform exactly one HTTP exchange."""
        full_path = self.base_path + path
        if query:
            full_path += '?' + urlencode(query)

        headers = {'Accept': 'application/json'}
        if authenticated:
            headers.update(self.auth_headers)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{self.base_path}{path}")
            conn.request(method, full_path, request_body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            self.close_connection()
            raise RoomServiceUnavailable(f"Connection error to {self.name}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        try:
            payload = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            if response.status >= 400:
                payload = {}
            else:
                raise RoomServiceError(f"Invalid JSON response from {self.name}: {e}", status_code=response.status)

        if response.status >= 400:
            errcode = payload.get('errcode') if isinstance(payload, dict) else None
            error = payload.get('error') if isinstance(payload, dict) else None
            message = f"HTTP {response.status} from {self.name}: {error or response.reason}"
            if response.status == 429 or response.status >= 500:
                raise RoomServiceUnavailable(message, status_code=response.status, errcode=errcode,
                                             retry_after=self._retry_after(payload))
            raise RoomServiceError(message, status_code=response.status, errcode=errcode)

        return payload

    @staticmethod
    def _retry_after(payload) -> Optional[float]:
        """Back-off hint from an error response, in seconds."""
        if isinstance(payload, dict):
            retry_after_ms = payload.get('retry_after_ms')
            if isinstance(retry_after_ms, (int, float)):
                return retry_after_ms / 1000.0
        return None

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    @abstractmethod
    def authenticate(self) -> bool:
        """
        Log in with the configured service account.

        Returns:
            True if authentication successful
        """
        pass

    @abstractmethod
    def user_id_for(self, username: str) -> str:
        """Remote user id of the directory user ``username``."""
        pass

    @abstractmethod
    def is_managed_user_id(self, user_id: str, known_usernames: Set[str]) -> bool:
        """
        Whether ``user_id`` belongs to a person this system manages.

        Remote members that are not managed are never removed.
        """
        pass

    @abstractmethod
    def ensure_room(self, project, initial_members: Iterable[str] = ()) -> RoomHandle:
        """
        Return the room bound to ``project``, provisioning it if none exists.

        Args:
            project: Project with ``project_id``, ``project_name`` and ``room_id``
            initial_members: Remote user ids invited when a new room is created

        Returns:
            RoomHandle for the project's room
        """
        pass

    @abstractmethod
    def list_room_members(self, room: RoomHandle) -> Set[str]:
        """Remote user ids currently joined to or invited into ``room``."""
        pass

    @abstractmethod
    def invite(self, room: RoomHandle, user_id: str) -> bool:
        """
        Invite ``user_id`` into ``room``; a no-op for members already joined or invited
        and for users banned from the room.

        Returns:
            True if an invite was sent, False if nothing had to be done

        Raises:
            MembershipChangeError: If the invite failed
        """
        pass

    @abstractmethod
    def remove(self, room: RoomHandle, user_id: str) -> bool:
        """
        Remove ``user_id`` from ``room``; a no-op for users not joined or invited.

        Returns:
            True if the user was removed, False if nothing had to be done

        Raises:
            MembershipChangeError: If the removal failed
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
