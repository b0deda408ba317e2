"""
LDAP client for reading and writing one directory endpoint.

This module connects to an LDAP server, takes a snapshot of the entries under
a search base, and applies add/modify change records to it.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import (
    Server, Connection, Tls, ALL, BASE, LEVEL, SUBTREE, ALL_ATTRIBUTES,
    MODIFY_ADD, MODIFY_REPLACE,
)
from ldap3.core.exceptions import LDAPException

from ldap_tree_sync.models import AttributeOp, AttributeValue, Entry, Snapshot
from ldap_tree_sync.retry import MaxRetriesExceeded, retry_transient

logger = logging.getLogger(__name__)

SEARCH_SCOPES = {
    'base': BASE,
    'one': LEVEL,
    'sub': SUBTREE,
}

MODIFY_OPERATIONS = {
    'replace': MODIFY_REPLACE,
    'add': MODIFY_ADD,
}


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPWriteError(Exception):
    """Raised when the server rejects an add or modify request."""

    def __init__(self, dn: str, result: Optional[Dict[str, Any]] = None, message: Optional[str] = None):
        self.dn = dn
        self.result = result or {}
        if message is None:
            description = self.result.get('description', 'unknown error')
            detail = self.result.get('message')
            message = f"{description}: {detail}" if detail else description
        super().__init__(f"{dn}: {message}")


def _decode_value(value: bytes) -> AttributeValue:
    try:
        return value.decode('utf-8')
    except UnicodeDecodeError:
        return value


class LDAPClient:
    """
    LDAP client for a single sync endpoint (source or target).

    Configured from an endpoint dictionary as produced by
    :func:`ldap_tree_sync.config.build_config`.
    """

    def __init__(self, config: Dict[str, Any], name: str = 'ldap'):
        """
        Initialize LDAP client with configuration.

        Args:
            config: Endpoint configuration dictionary
            name: Label used in log messages ('source' or 'target')
        """
        self.config = config
        self.name = name
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.base = config.get('base') or ''
        self.search_filter = config.get('filter', '(objectClass=*)')
        self.scope = config.get('scope', 'sub')
        self.attributes = config.get('attributes') or [ALL_ATTRIBUTES]

        # SSL/TLS configuration
        self.use_ssl = self.server_url.lower().startswith('ldaps://')
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 500)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Open, optionally secure, and bind the connection.

        Socket-level failures are retried; a rejected bind is not.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If the server cannot be reached or the bind fails
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created {self.name} server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create {self.name} server {self.server_url}: {e}")

        try:
            retry_transient(
                self._open,
                attempts=self.max_retries,
                wait=self.retry_wait,
                description=f"Connecting to {self.server_url}"
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to {self.server_url} after {e.attempts} attempts: {e.last_exception}"
            )
        except LDAPException as e:
            self._discard_connection()
            raise LDAPConnectionError(f"Failed to connect to {self.server_url}: {e}")

        if self.start_tls and not self.use_ssl:
            try:
                started = self.connection.start_tls()
            except LDAPException as e:
                self._discard_connection()
                raise LDAPConnectionError(f"Failed to start TLS on {self.server_url}: {e}")
            if not started:
                result = self.connection.result
                self._discard_connection()
                raise LDAPConnectionError(f"Failed to start TLS on {self.server_url}: {result}")
            logger.debug("StartTLS negotiation successful")

        identity = self.bind_dn or 'anonymous'
        try:
            bound = self.connection.bind()
        except LDAPException as e:
            self._discard_connection()
            raise LDAPConnectionError(f"Bind as {identity} to {self.server_url} failed: {e}")
        if not bound:
            result = self.connection.result
            self._discard_connection()
            raise LDAPConnectionError(f"Bind as {identity} to {self.server_url} failed: {result}")

        self._connected = True
        logger.info(f"Connected to {self.name} server {self.server_url} as {identity}")
        return True

    def _open(self):
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            self.connection.open()
        except LDAPException:
            self._discard_connection()
            raise

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while closing {self.name} connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAPS or StartTLS.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning(f"SSL certificate verification disabled for {self.server_url}")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug(f"{self.name} connection closed")
            except Exception as e:
                logger.warning(f"Error closing {self.name} connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def fetch_snapshot(self) -> Snapshot:
        """
        Search the configured base and return every entry found.

        Returns:
            Snapshot keyed by the DNs exactly as the server returned them

        Raises:
            LDAPQueryError: If not connected or the search fails
        """
        if not self._connected:
            raise LDAPQueryError(f"Not connected to {self.name} server")

        scope = SEARCH_SCOPES.get(self.scope)
        if scope is None:
            raise LDAPQueryError(f"Unknown search scope: {self.scope}")

        logger.info(f"Searching {self.name} {self.server_url} base={self.base!r} "
                    f"filter={self.search_filter} scope={self.scope}")

        entries = {}
        try:
            results = self.connection.extend.standard.paged_search(
                search_base=self.base,
                search_filter=self.search_filter,
                search_scope=scope,
                attributes=self.attributes,
                paged_size=self.page_size,
                generator=True
            )
            for item in results:
                if item.get('type') != 'searchResEntry':
                    continue
                entries[item['dn']] = self._entry_from_result(item)
        except LDAPException as e:
            raise LDAPQueryError(f"Search on {self.server_url} failed: {e}")

        # The paged search generator does not check the final result code
        result = self.connection.result
        if not result or result.get('result') != 0:
            description = result.get('description', 'no result') if result else 'no result'
            detail = result.get('message') if result else None
            raise LDAPQueryError(
                f"Search on {self.server_url} base={self.base!r} failed after {len(entries)} entries: "
                + (f"{description}: {detail}" if detail else description)
            )

        logger.info(f"Retrieved {len(entries)} entries from {self.name}")
        return Snapshot(entries)

    def _entry_from_result(self, item: Dict[str, Any]) -> Entry:
        raw = item.get('raw_attributes') or {}
        return Entry({
            name: [_decode_value(value) if isinstance(value, bytes) else value for value in values]
            for name, values in raw.items()
        })

    def add_entry(self, dn: str, attributes: Entry):
        """
        Create ``dn`` with the given attributes.

        Raises:
            LDAPWriteError: If the server rejects the request
        """
        payload = {name: list(values) for name, values in attributes.items()}
        self._write(dn, lambda: self.connection.add(dn, attributes=payload))
        logger.info(f"Added entry {dn}")

    def modify_entry(self, dn: str, ops: List[AttributeOp]):
        """
        Apply all attribute operations to ``dn`` in a single modify request.

        Raises:
            LDAPWriteError: If the server rejects the request
        """
        changes = {}
        for op in ops:
            changes.setdefault(op.attribute, []).append((MODIFY_OPERATIONS[op.kind], list(op.values)))
        self._write(dn, lambda: self.connection.modify(dn, changes))
        logger.info(f"Modified entry {dn} ({len(ops)} attribute operations)")

    def _write(self, dn: str, request):
        if not self._connected:
            raise LDAPWriteError(dn, message=f"not connected to {self.name} server")
        try:
            success = request()
        except LDAPException as e:
            raise LDAPWriteError(dn, message=str(e))
        if not success:
            raise LDAPWriteError(dn, self.connection.result)

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection settings and status.

        Returns:
            Dictionary with connection information
        """
        stats = {
            'name': self.name,
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'base': self.base,
            'filter': self.search_filter,
            'scope': self.scope,
            'page_size': self.page_size
        }

        if self.connection:
            stats.update({
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })

        return stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
