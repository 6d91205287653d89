"""
LDAP client for reading users and write privileges from the directory.

This module wraps a single LDAPv3-over-TLS connection. It provides the two
directory reads the reconciliation needs (the list of users matching the
configured user filter, and a per-user write privilege check) plus the filter
escaping and templating helpers those reads are built on.
"""

import logging
import ssl
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Any, Optional, Set

from ldap3 import Server, Connection, Tls, LEVEL, NONE
from ldap3.core.exceptions import (
    LDAPException,
    LDAPBindError,
    LDAPCommunicationError,
    LDAPSSLConfigurationError,
)

from projectroom_sync.retry import RetryPolicy, retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
USERNAME_PLACEHOLDER = '{username}'

# busy, unavailable
UNAVAILABLE_RESULT_CODES = {51, 52}


class DirectoryError(Exception):
    """Base exception for directory errors."""
    pass


class DirectoryUnavailable(DirectoryError):
    """Raised when the directory cannot be reached, bound to, or the TLS handshake fails."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised for malformed filters, failed searches and ambiguous results."""
    pass


# RFC 4515 mandates ( ) * \ NUL; the rest are the RFC 4514 specials,
# escaped as well so usernames cannot alter the filter structure.
_FILTER_ESCAPES = {
    '(': '\\28',
    ')': '\\29',
    '*': '\\2a',
    '\\': '\\5c',
    '\0': '\\00',
    '"': '\\22',
    '#': '\\23',
    '+': '\\2b',
    ',': '\\2c',
    ';': '\\3b',
    '<': '\\3c',
    '=': '\\3d',
    '>': '\\3e',
    '|': '\\7c',
    ' ': '\\20',
}


def escape_filter_value(value: str) -> str:
    """Escape a value so it can be embedded in an LDAP search filter."""
    return ''.join(_FILTER_ESCAPES.get(char, char) for char in value)


def normalize_filter(filter_text: str) -> str:
    """Wrap a bare filter such as ``memberOf=cn=x`` in parentheses."""
    filter_text = (filter_text or '').strip()
    if not filter_text:
        raise DirectoryQueryError("LDAP filter is empty")
    if filter_text.startswith('(') and filter_text.endswith(')'):
        return filter_text
    return f"({filter_text})"


def render_write_filter(template: str, username: str) -> str:
    """Substitute the escaped username for every ``{username}`` placeholder in ``template``."""
    return normalize_filter(template.replace(USERNAME_PLACEHOLDER, escape_filter_value(username)))


@dataclass(frozen=True)
class DirectoryUser:
    """A user as seen in the directory."""

    username: str
    display_name: str
    firstname: Optional[str] = None
    surname: Optional[str] = None


class DirectoryClient:
    """
    Directory client holding one LDAPS connection that is reused across ticks.

    The connection is bound lazily on first use. When a call detects that the
    connection was lost, it is dropped and the call is repeated once over a
    freshly bound connection before the failure is reported.
    """

    def __init__(self, config: Dict[str, Any], cancel_event: Optional[threading.Event] = None):
        """
        Initialize directory client with configuration.

        Args:
            config: ``ldap`` configuration section
            cancel_event: Ends bind retries early once set
        """
        self.config = config
        self.server_host = config['server_host']
        self.server_port = int(config.get('server_port', 636))
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config['user_base_dn']
        self.user_filter = normalize_filter(config['user_filter'])
        self.write_access_filter = config['write_access_filter']
        self.username_attribute = config.get('username_attribute', 'uid')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 500)

        self.retry_policy = RetryPolicy.from_config(config.get('error_handling', {}))
        self.cancel_event = cancel_event

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def server_url(self) -> str:
        return f"ldaps://{self.server_host}:{self.server_port}"

    @property
    def attributes(self) -> List[str]:
        return [self.username_attribute, 'cn', 'displayName', 'givenName', 'sn']

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[float] = None) -> bool:
        """
        Establish and bind the LDAPS connection, retrying transient failures.

        Returns:
            True if connection successful

        Raises:
            DirectoryUnavailable: If connection, TLS or bind fails after all retries
        """
        policy = self.retry_policy
        if max_retries is not None:
            policy = replace(policy, max_attempts=max_retries + 1)
        if retry_wait is not None:
            policy = replace(policy, delay=retry_wait)

        try:
            retry_call(
                self._open_and_bind,
                policy=policy,
                exceptions=(DirectoryUnavailable,),
                on_retry=create_retry_callback("LDAP bind"),
                cancel_event=self.cancel_event
            )
        except MaxRetriesExceeded as e:
            raise DirectoryUnavailable(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            )
        return True

    def _open_and_bind(self):
        """Open one connection to the server and bind as the service DN."""
        self._drop_connection()

        try:
            self.server = Server(
                self.server_host,
                port=self.server_port,
                use_ssl=True,
                tls=self._create_tls_config(),
                get_info=NONE,
                connect_timeout=self.connection_timeout
            )
            connection = Connection(
                self.server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                read_only=True,
                receive_timeout=self.receive_timeout
            )

            # open() reports failure by raising or by leaving the connection closed
            connection.open()
            if connection.closed:
                raise DirectoryUnavailable(f"Could not open a connection to {self.server_url}")

            if not connection.bind():
                description = (connection.result or {}).get('description', 'unknown error')
                raise DirectoryUnavailable(f"Bind as {self.bind_dn} failed: {description}")

        except (LDAPCommunicationError, LDAPBindError, LDAPSSLConfigurationError) as e:
            raise DirectoryUnavailable(f"Cannot connect to {self.server_url}: {e}")
        except LDAPException as e:
            raise DirectoryUnavailable(f"LDAP error while connecting to {self.server_url}: {e}")

        self.connection = connection
        self._connected = True
        logger.info(f"Connected and bound to LDAP server {self.server_url}")

    def _create_tls_config(self) -> Tls:
        """TLS settings: certificates are always validated against the host's trusted roots."""
        try:
            return Tls(validate=ssl.CERT_REQUIRED)
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to create TLS configuration: {e}")

    def _drop_connection(self):
        """Forget the current connection, unbinding it if possible."""
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while dropping LDAP connection: {e}")
        self.connection = None
        self._connected = False

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            logger.debug("Closing LDAP connection")
        self._drop_connection()

    def reconnect(self) -> bool:
        """Drop the current connection and bind a fresh one."""
        self._drop_connection()
        return self.connect()

    def fetch_directory_users(self) -> Set[DirectoryUser]:
        """
        Read every user matching the configured user filter.

        Returns:
            Set of DirectoryUser

        Raises:
            DirectoryUnavailable: If the directory cannot be reached
            DirectoryQueryError: If the search fails
        """
        entries = self._search(self.user_filter, paged=True)

        users = set()
        for attributes in entries:
            user = self._to_directory_user(attributes)
            if user is not None:
                users.add(user)

        logger.info(f"Retrieved {len(users)} users from {self.user_base_dn}")
        return users

    def has_write_privilege(self, username: str) -> bool:
        """
        Check whether ``username`` matches the write access filter.

        Returns:
            True for exactly one match, False for none

        Raises:
            DirectoryUnavailable: If the directory cannot be reached
            DirectoryQueryError: For more than one match or a failed search
        """
        search_filter = self.write_access_filter_for(username)
        entries = self._search(search_filter, paged=False)

        if len(entries) > 1:
            raise DirectoryQueryError(
                f"Write access filter matched {len(entries)} entries for user {username}"
            )
        return len(entries) == 1

    def write_access_filter_for(self, username: str) -> str:
        """Full filter used for the write privilege check of ``username``."""
        return (
            f"(&({self.username_attribute}={escape_filter_value(username)})"
            f"{render_write_filter(self.write_access_filter, username)}"
            f"{self.user_filter})"
        )

    def _search(self, search_filter: str, paged: bool) -> List[Dict[str, List[Any]]]:
        """
        Run a search at the user base, reconnecting once if the connection was lost.

        Returns:
            Attribute dictionaries of the matched entries
        """
        if not self._connected:
            self.connect()
        try:
            return self._query(search_filter, paged)
        except LDAPCommunicationError as e:
            logger.warning(f"LDAP connection lost ({e}), reconnecting with a fresh bind")

        self.reconnect()
        try:
            return self._query(search_filter, paged)
        except LDAPCommunicationError as e:
            self._drop_connection()
            raise DirectoryUnavailable(f"LDAP connection lost during search: {e}")

    def _query(self, search_filter: str, paged: bool) -> List[Dict[str, List[Any]]]:
        try:
            return self._search_pages(search_filter, paged)
        except LDAPCommunicationError:
            raise
        except LDAPException as e:
            raise DirectoryQueryError(f"LDAP search with filter {search_filter} failed: {e}")

    def _search_pages(self, search_filter: str, paged: bool) -> List[Dict[str, List[Any]]]:
        logger.debug(f"Searching with filter: {search_filter} in base: {self.user_base_dn}")

        results = []
        cookie = None
        page_count = 0

        while True:
            search_args = {
                'search_base': self.user_base_dn,
                'search_filter': search_filter,
                'search_scope': LEVEL,
                'attributes': self.attributes,
            }
            if paged:
                search_args['paged_size'] = self.page_size
                search_args['paged_cookie'] = cookie

            self.connection.search(**search_args)
            self._check_result(search_filter)

            page_count += 1
            for entry in self.connection.entries:
                results.append(entry.entry_attributes_as_dict)

            if not paged:
                break

            cookie = self._paged_cookie()
            if not cookie:
                break

        logger.debug(f"Search returned {len(results)} entries across {page_count} pages")
        return results

    def _check_result(self, search_filter: str):
        result = self.connection.result or {}
        code = result.get('result', 0)
        if code == 0:
            return

        description = result.get('description', 'unknown')
        if code in UNAVAILABLE_RESULT_CODES:
            self._drop_connection()
            raise DirectoryUnavailable(f"Directory unavailable ({code} {description})")
        raise DirectoryQueryError(f"Search with filter {search_filter} failed: {code} {description}")

    def _paged_cookie(self) -> Optional[bytes]:
        controls = (self.connection.result or {}).get('controls') or {}
        paged_control = controls.get(PAGED_RESULTS_OID) or {}
        return (paged_control.get('value') or {}).get('cookie')

    def _to_directory_user(self, attributes: Dict[str, List[Any]]) -> Optional[DirectoryUser]:
        """Build a DirectoryUser from an entry's attributes, or None if it has no username."""
        def first(name):
            values = attributes.get(name) or []
            if isinstance(values, (list, tuple)):
                values = [v for v in values if v]
                return str(values[0]) if values else None
            return str(values) if values else None

        username = first(self.username_attribute)
        if not username:
            logger.warning(f"Directory entry without {self.username_attribute} skipped: {attributes}")
            return None

        firstname = first('givenName')
        surname = first('sn')
        full_name = ' '.join(part for part in (firstname, surname) if part)
        display_name = first('displayName') or first('cn') or full_name or username

        return DirectoryUser(
            username=username,
            display_name=display_name,
            firstname=firstname,
            surname=surname
        )

    def get_connection_stats(self) -> Dict[str, Any]:
        """Connection status for health reporting; never includes the bind password."""
        stats = {
            'connected': self._connected,
            'server_url': self.server_url,
            'bind_dn': self.bind_dn,
            'user_base_dn': self.user_base_dn,
            'user_filter': self.user_filter,
            'page_size': self.page_size
        }

        if self.connection:
            stats['bound'] = getattr(self.connection, 'bound', False)

        return stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
