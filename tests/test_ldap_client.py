#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

The ldap3 Server and Connection classes are mocked, or backed by the
in-memory MOCK_SYNC strategy, so no directory server is needed.
"""

import os
import sys
import ssl
import unittest
from unittest.mock import Mock, patch

from ldap3 import BASE, LEVEL, SUBTREE, MODIFY_ADD, MODIFY_REPLACE, MOCK_SYNC, NONE
from ldap3 import Connection as LDAP3Connection, Server as LDAP3Server
from ldap3.core.exceptions import (
    LDAPSocketOpenError, LDAPSocketReceiveError, LDAPStartTLSError, LDAPOperationResult
)

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_tree_sync.ldap_client import (
    LDAPClient, LDAPConnectionError, LDAPQueryError, LDAPWriteError
)
from ldap_tree_sync.models import AddValues, Entry, ReplaceValues, Snapshot


def endpoint(**overrides):
    config = {
        'server_url': 'ldap://ldap.example.com:389',
        'bind_dn': 'cn=admin,dc=example,dc=com',
        'bind_password': 'password123',
        'base': 'dc=example,dc=com',
        'error_handling': {
            'max_retries': 3,
            'retry_wait_seconds': 0
        }
    }
    config.update(overrides)
    return config


def connected_client(**overrides):
    """Return a client whose connection is a Mock, already marked connected."""
    client = LDAPClient(endpoint(**overrides), name='target')
    client.connection = Mock()
    client.connection.result = {'result': 0, 'description': 'success'}
    client._connected = True
    return client


ADMIN_DN = 'cn=admin,o=services'


def mock_directory(entries):
    """Return an ldap3 Server whose in-memory tree holds ``entries`` plus a bind account."""
    server = LDAP3Server('mock.example.com', get_info=NONE)
    loader = LDAP3Connection(server, client_strategy=MOCK_SYNC)
    loader.strategy.add_entry(ADMIN_DN, {'objectClass': ['person'], 'cn': ['admin'], 'sn': ['admin'],
                                         'userPassword': ['secret']})
    for dn, attributes in entries.items():
        loader.strategy.add_entry(dn, attributes)
    return server


def mock_connection(server, user=None, password=None, **kwargs):
    return LDAP3Connection(server, user=user, password=password, client_strategy=MOCK_SYNC)


class TestInitialization(unittest.TestCase):

    def test_defaults(self):
        client = LDAPClient({'server_url': 'ldap://ldap.example.com'})
        self.assertIsNone(client.bind_dn)
        self.assertEqual(client.base, '')
        self.assertEqual(client.search_filter, '(objectClass=*)')
        self.assertEqual(client.scope, 'sub')
        self.assertEqual(client.attributes, ['*'])
        self.assertFalse(client.use_ssl)
        self.assertEqual(client.max_retries, 3)

    def test_ldaps_url_enables_ssl(self):
        client = LDAPClient(endpoint(server_url='LDAPS://ldap.example.com'))
        self.assertTrue(client.use_ssl)


class TestTLSConfiguration(unittest.TestCase):

    def test_no_tls_for_plain_ldap(self):
        self.assertIsNone(LDAPClient(endpoint())._create_tls_config())

    @patch('ldap_tree_sync.ldap_client.Tls')
    def test_tls_for_ldaps_with_ca_file(self, mock_tls):
        client = LDAPClient(endpoint(server_url='ldaps://ldap.example.com', ca_cert_file='/etc/ssl/ca.pem'))
        client._create_tls_config()
        mock_tls.assert_called_once_with(validate=ssl.CERT_REQUIRED, ca_certs_file='/etc/ssl/ca.pem')

    @patch('ldap_tree_sync.ldap_client.Tls')
    def test_tls_for_starttls_without_verification(self, mock_tls):
        client = LDAPClient(endpoint(start_tls=True, verify_ssl=False))
        client._create_tls_config()
        mock_tls.assert_called_once_with(validate=ssl.CERT_NONE)


class TestConnect(unittest.TestCase):

    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_successful_connect(self, mock_connection, mock_server):
        conn = Mock()
        conn.bind.return_value = True
        mock_connection.return_value = conn

        client = LDAPClient(endpoint())
        self.assertTrue(client.connect())

        self.assertTrue(client._connected)
        conn.open.assert_called_once()
        conn.bind.assert_called_once()
        conn.start_tls.assert_not_called()
        _, kwargs = mock_connection.call_args
        self.assertEqual(kwargs['user'], 'cn=admin,dc=example,dc=com')
        self.assertEqual(kwargs['password'], 'password123')

    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_anonymous_bind(self, mock_connection, mock_server):
        conn = Mock()
        conn.bind.return_value = True
        mock_connection.return_value = conn

        client = LDAPClient({'server_url': 'ldap://ldap.example.com'})
        client.connect()

        _, kwargs = mock_connection.call_args
        self.assertIsNone(kwargs['user'])
        self.assertIsNone(kwargs['password'])

    @patch('ldap_tree_sync.ldap_client.Tls')
    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_starttls(self, mock_connection, mock_server, mock_tls):
        conn = Mock()
        conn.start_tls.return_value = True
        conn.bind.return_value = True
        mock_connection.return_value = conn

        LDAPClient(endpoint(start_tls=True)).connect()

        conn.start_tls.assert_called_once()

    @patch('ldap_tree_sync.ldap_client.Tls')
    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_starttls_failure(self, mock_connection, mock_server, mock_tls):
        conn = Mock()
        conn.start_tls.return_value = False
        mock_connection.return_value = conn

        with self.assertRaises(LDAPConnectionError) as context:
            LDAPClient(endpoint(start_tls=True)).connect()
        self.assertIn('Failed to start TLS', str(context.exception))
        conn.bind.assert_not_called()

    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_bind_failure_is_not_retried(self, mock_connection, mock_server):
        conn = Mock()
        conn.bind.return_value = False
        conn.result = {'description': 'invalidCredentials'}
        mock_connection.return_value = conn

        client = LDAPClient(endpoint())
        with self.assertRaises(LDAPConnectionError) as context:
            client.connect()

        self.assertIn('invalidCredentials', str(context.exception))
        self.assertEqual(mock_connection.call_count, 1)
        self.assertFalse(client._connected)

    @patch('ldap_tree_sync.ldap_client.Tls')
    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_starttls_exception_is_wrapped(self, mock_connection, mock_server, mock_tls):
        conn = Mock()
        conn.start_tls.side_effect = LDAPStartTLSError('wrap socket error: certificate verify failed')
        mock_connection.return_value = conn

        client = LDAPClient(endpoint(start_tls=True))
        with self.assertRaises(LDAPConnectionError) as context:
            client.connect()

        self.assertIn('certificate verify failed', str(context.exception))
        conn.bind.assert_not_called()
        conn.unbind.assert_called_once()
        self.assertIsNone(client.connection)
        self.assertFalse(client._connected)

    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_bind_exception_is_wrapped(self, mock_connection, mock_server):
        conn = Mock()
        conn.bind.side_effect = LDAPSocketReceiveError('connection reset by peer')
        mock_connection.return_value = conn

        client = LDAPClient(endpoint())
        with self.assertRaises(LDAPConnectionError) as context:
            client.connect()

        self.assertIn('Bind as cn=admin,dc=example,dc=com', str(context.exception))
        self.assertIn('connection reset by peer', str(context.exception))
        self.assertEqual(mock_connection.call_count, 1)
        conn.unbind.assert_called_once()
        self.assertIsNone(client.connection)

    @patch('ldap_tree_sync.retry.time.sleep')
    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_socket_failure_is_retried(self, mock_connection, mock_server, mock_sleep):
        conn = Mock()
        conn.open.side_effect = LDAPSocketOpenError('unable to open socket')
        mock_connection.return_value = conn

        with self.assertRaises(LDAPConnectionError) as context:
            LDAPClient(endpoint()).connect()

        self.assertIn('after 3 attempts', str(context.exception))
        self.assertEqual(conn.open.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    @patch('ldap_tree_sync.retry.time.sleep')
    @patch('ldap_tree_sync.ldap_client.Server')
    @patch('ldap_tree_sync.ldap_client.Connection')
    def test_socket_failure_then_success(self, mock_connection, mock_server, mock_sleep):
        conn = Mock()
        conn.open.side_effect = [LDAPSocketOpenError('unable to open socket'), True]
        conn.bind.return_value = True
        mock_connection.return_value = conn

        self.assertTrue(LDAPClient(endpoint()).connect())
        self.assertEqual(conn.open.call_count, 2)

    @patch('ldap_tree_sync.ldap_client.Server')
    def test_server_creation_failure(self, mock_server):
        mock_server.side_effect = ValueError('bad url')
        with self.assertRaises(LDAPConnectionError):
            LDAPClient(endpoint()).connect()


class TestFetchSnapshot(unittest.TestCase):

    def test_requires_connection(self):
        with self.assertRaises(LDAPQueryError):
            LDAPClient(endpoint()).fetch_snapshot()

    def test_builds_snapshot_from_entries(self):
        client = connected_client(filter='(objectClass=person)', scope='one', page_size=100)
        client.connection.extend.standard.paged_search.return_value = iter([
            {
                'type': 'searchResEntry',
                'dn': 'uid=alice,dc=example,dc=com',
                'raw_attributes': {
                    'cn': [b'Alice'],
                    'mail': [b'alice@example.com', b'a@example.com'],
                    'jpegPhoto': [b'\xff\xd8\xff'],
                },
            },
            {'type': 'searchResRef', 'uri': ['ldap://other.example.com/dc=other']},
            {
                'type': 'searchResEntry',
                'dn': 'dc=example,dc=com',
                'raw_attributes': {'dc': [b'example']},
            },
        ])

        snapshot = client.fetch_snapshot()

        self.assertIsInstance(snapshot, Snapshot)
        self.assertEqual(sorted(snapshot), ['dc=example,dc=com', 'uid=alice,dc=example,dc=com'])
        alice = snapshot['uid=alice,dc=example,dc=com']
        self.assertEqual(alice['mail'], ('alice@example.com', 'a@example.com'))
        self.assertEqual(alice['jpegPhoto'], (b'\xff\xd8\xff',))

        _, kwargs = client.connection.extend.standard.paged_search.call_args
        self.assertEqual(kwargs['search_base'], 'dc=example,dc=com')
        self.assertEqual(kwargs['search_filter'], '(objectClass=person)')
        self.assertEqual(kwargs['search_scope'], LEVEL)
        self.assertEqual(kwargs['paged_size'], 100)

    def test_scope_mapping(self):
        for name, scope in (('base', BASE), ('one', LEVEL), ('sub', SUBTREE)):
            client = connected_client(scope=name)
            client.connection.extend.standard.paged_search.return_value = iter([])
            client.fetch_snapshot()
            _, kwargs = client.connection.extend.standard.paged_search.call_args
            self.assertEqual(kwargs['search_scope'], scope)

    def test_unknown_scope(self):
        with self.assertRaises(LDAPQueryError):
            connected_client(scope='children').fetch_snapshot()

    def test_search_failure(self):
        client = connected_client()

        def failing_search(**kwargs):
            raise LDAPOperationResult(result=32, description='noSuchObject')
            yield

        client.connection.extend.standard.paged_search.side_effect = failing_search

        with self.assertRaises(LDAPQueryError) as context:
            client.fetch_snapshot()
        self.assertIn('ldap.example.com', str(context.exception))

    def test_failed_result_code_after_partial_results(self):
        client = connected_client()
        client.connection.extend.standard.paged_search.return_value = iter([
            {'type': 'searchResEntry', 'dn': 'uid=a,dc=example,dc=com', 'raw_attributes': {'uid': [b'a']}},
        ])
        client.connection.result = {'result': 4, 'description': 'sizeLimitExceeded', 'message': ''}

        with self.assertRaises(LDAPQueryError) as context:
            client.fetch_snapshot()
        self.assertIn('sizeLimitExceeded', str(context.exception))
        self.assertIn('after 1 entries', str(context.exception))


@patch('ldap_tree_sync.ldap_client.Connection', side_effect=mock_connection)
@patch('ldap_tree_sync.ldap_client.Server')
class TestFetchSnapshotFromDirectory(unittest.TestCase):
    """Searches run through ldap3's paged search against an in-memory directory."""

    ENTRIES = {
        'dc=example,dc=com': {'objectClass': ['domain'], 'dc': ['example']},
        'uid=alice,dc=example,dc=com': {'objectClass': ['inetOrgPerson'], 'uid': ['alice'],
                                        'cn': ['Alice'], 'sn': ['Smith'], 'mail': ['alice@example.com']},
    }

    def connect(self, mock_server, **overrides):
        mock_server.return_value = mock_directory(self.ENTRIES)
        client = LDAPClient(endpoint(bind_dn=ADMIN_DN, bind_password='secret', **overrides), name='source')
        client.connect()
        return client

    def test_snapshot_of_base(self, mock_server, mock_connection_class):
        client = self.connect(mock_server, page_size=1)

        snapshot = client.fetch_snapshot()

        self.assertEqual(sorted(snapshot), ['dc=example,dc=com', 'uid=alice,dc=example,dc=com'])
        self.assertEqual(snapshot['uid=alice,dc=example,dc=com']['mail'], ('alice@example.com',))

    def test_missing_base_raises(self, mock_server, mock_connection_class):
        client = self.connect(mock_server, base='ou=missing,dc=example,dc=com')

        with self.assertRaises(LDAPQueryError) as context:
            client.fetch_snapshot()
        self.assertIn('noSuchObject', str(context.exception))

    def test_wrong_password_fails_bind(self, mock_server, mock_connection_class):
        mock_server.return_value = mock_directory(self.ENTRIES)
        client = LDAPClient(endpoint(bind_dn=ADMIN_DN, bind_password='wrong'))

        with self.assertRaises(LDAPConnectionError) as context:
            client.connect()
        self.assertIn('invalidCredentials', str(context.exception))


class TestWrites(unittest.TestCase):

    def test_add_entry(self):
        client = connected_client()
        client.connection.add.return_value = True

        client.add_entry('cn=x,dc=example,dc=com', Entry({'objectClass': ['top', 'person'], 'cn': ['x']}))

        client.connection.add.assert_called_once_with(
            'cn=x,dc=example,dc=com',
            attributes={'objectClass': ['top', 'person'], 'cn': ['x']}
        )

    def test_modify_entry_single_request(self):
        client = connected_client()
        client.connection.modify.return_value = True

        client.modify_entry('uid=a,dc=x', [ReplaceValues('mail', ['a@x']), AddValues('member', ['1', '2'])])

        client.connection.modify.assert_called_once_with('uid=a,dc=x', {
            'mail': [(MODIFY_REPLACE, ['a@x'])],
            'member': [(MODIFY_ADD, ['1', '2'])],
        })

    def test_rejected_write_raises_with_server_message(self):
        client = connected_client()
        client.connection.modify.return_value = False
        client.connection.result = {'result': 65, 'description': 'objectClassViolation',
                                    'message': 'attribute not allowed'}

        with self.assertRaises(LDAPWriteError) as context:
            client.modify_entry('uid=a,dc=x', [AddValues('foo', ['bar'])])

        self.assertEqual(context.exception.dn, 'uid=a,dc=x')
        self.assertIn('objectClassViolation: attribute not allowed', str(context.exception))

    def test_write_exception_is_wrapped(self):
        client = connected_client()
        client.connection.add.side_effect = LDAPOperationResult(result=68, description='entryAlreadyExists')

        with self.assertRaises(LDAPWriteError):
            client.add_entry('cn=x', Entry({'cn': ['x']}))

    def test_write_requires_connection(self):
        client = LDAPClient(endpoint())
        with self.assertRaises(LDAPWriteError):
            client.add_entry('cn=x', Entry({'cn': ['x']}))


class TestLifecycle(unittest.TestCase):

    def test_connection_stats(self):
        stats = LDAPClient(endpoint(scope='one'), name='source').get_connection_stats()
        self.assertEqual(stats['name'], 'source')
        self.assertFalse(stats['connected'])
        self.assertEqual(stats['scope'], 'one')
        self.assertEqual(stats['base'], 'dc=example,dc=com')

    def test_context_manager_disconnects(self):
        client = connected_client()
        conn = client.connection
        with client:
            pass
        conn.unbind.assert_called_once()
        self.assertFalse(client._connected)
        self.assertIsNone(client.connection)


if __name__ == '__main__':
    unittest.main()
