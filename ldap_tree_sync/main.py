"""
Main orchestrator for LDAP Tree Sync.

This module wires the pieces of a sync run together: it reads both
directories, reconciles them, and either prints the resulting LDIF (dry run)
or applies it to the target.
"""

import sys
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

from ldap_tree_sync import __version__
from ldap_tree_sync.applier import Applier, ApplyError
from ldap_tree_sync.config import build_config, ConfigurationError, VALID_SCOPES
from ldap_tree_sync.engine import Reconciler, ReconcileInvariantError, ReconcileResult
from ldap_tree_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_tree_sync.logging_setup import setup_logging, verbosity_level
from ldap_tree_sync.models import Snapshot
from ldap_tree_sync.reporter import render, render_all

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_CONNECTION = 3
EXIT_SEARCH = 4
EXIT_WRITE = 5
EXIT_INTERNAL = 6


class SyncOrchestrator:
    """
    Runs one source-to-target synchronization.

    The orchestrator owns the two directory clients; the reconciliation
    engine only ever sees the snapshots they return.
    """

    def __init__(self, config: Dict[str, Any], output=None, output_path: Optional[str] = None):
        """
        Initialize sync orchestrator.

        Args:
            config: Validated configuration from :func:`build_config`
            output: Stream receiving dry-run LDIF (defaults to stdout)
            output_path: File receiving dry-run LDIF instead of ``output``;
                only created once reconciliation has succeeded
        """
        self.config = config
        self.output = output if output is not None else sys.stdout
        self.output_path = output_path
        self.dry_run = bool(config.get('dry_run'))
        self.clients: List[LDAPClient] = []
        self.result: Optional[ReconcileResult] = None

        self.sync_stats = {
            'source_entries': 0,
            'target_entries': 0,
            'entries_added': 0,
            'entries_modified': 0,
            'attribute_ops': 0,
            'entry_delete_candidates': 0,
            'value_delete_candidates': 0,
            'records_applied': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()
            logger.info(f"Starting LDAP Tree Sync{' (dry run)' if self.dry_run else ''}")

            source = self._read(self._connect('source'))
            target_client = self._connect('target')
            target = self._read(target_client)

            self.result = Reconciler().run(source, target)
            self._update_stats()
            self._log_records()

            if self.dry_run:
                try:
                    self._write_ldif(render_all(self.result.records))
                except OSError as e:
                    logger.error(f"Cannot write {self.output_path or 'LDIF output'}: {e}")
                    return EXIT_USAGE
            else:
                self.sync_stats['records_applied'] = Applier(target_client).apply(self.result.records)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()
            return EXIT_OK

        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_CONNECTION
        except LDAPQueryError as e:
            logger.error(f"LDAP search error: {e}")
            return EXIT_SEARCH
        except ApplyError as e:
            logger.error(f"LDAP write error: {e}")
            return EXIT_WRITE
        except ReconcileInvariantError as e:
            logger.error(f"Internal error, reconciliation invariant violated: {e}")
            return EXIT_INTERNAL
        finally:
            self._cleanup()

    def _write_ldif(self, ldif: str):
        if self.output_path:
            with open(self.output_path, 'w', encoding='utf-8') as f:
                f.write(ldif)
            logger.info(f"Wrote LDIF to {self.output_path}")
        else:
            self.output.write(ldif)
            self.output.flush()

    def _connect(self, name: str) -> LDAPClient:
        client = LDAPClient(self.config[name], name=name)
        self.clients.append(client)
        client.connect()
        logger.debug(f"{name} connection: {client.get_connection_stats()}")
        return client

    def _read(self, client: LDAPClient) -> Snapshot:
        snapshot = client.fetch_snapshot()
        self.sync_stats[f'{client.name}_entries'] = len(snapshot)
        return snapshot

    def _update_stats(self):
        result = self.result
        self.sync_stats['entries_added'] = result.entries_added
        self.sync_stats['entries_modified'] = result.entries_modified
        self.sync_stats['attribute_ops'] = result.attribute_ops
        self.sync_stats['entry_delete_candidates'] = len(result.deleted_entries)
        self.sync_stats['value_delete_candidates'] = len(result.deleted_values)

    def _log_records(self):
        for record in self.result.records:
            logger.info(f"{record.changetype} {record.dn}")
            logger.debug("Change record:\n" + render(record))
        for candidate in self.result.deleted_entries:
            logger.info(f"Not deleting {candidate.dn}: entry exists only in target")
        for dn, candidate in self.result.deleted_values:
            logger.debug(f"Not deleting {len(candidate.values)} value(s) of {candidate.attribute} "
                         f"from {dn}: present only in target")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Source entries: {stats['source_entries']}")
        logger.info(f"Target entries: {stats['target_entries']}")
        logger.info(f"Entries to add: {stats['entries_added']}")
        logger.info(f"Entries to modify: {stats['entries_modified']} ({stats['attribute_ops']} attribute operations)")
        logger.info(f"Entries only in target (not deleted): {stats['entry_delete_candidates']}")
        logger.info(f"Attributes with target-only values (not deleted): {stats['value_delete_candidates']}")
        if self.dry_run:
            logger.info("Dry run: no changes applied")
        else:
            logger.info(f"Change records applied: {stats['records_applied']}")

    def _cleanup(self):
        """Clean up resources."""
        for client in self.clients:
            client.disconnect()
        self.clients = []


def build_parser() -> argparse.ArgumentParser:
    """Create the command-line parser."""
    parser = argparse.ArgumentParser(
        prog='ldap-tree-sync',
        description='Make the entries of a target LDAP directory match a source directory. '
                    'Entries and values are added or replaced, never deleted.',
        epilog='Options marked "once or twice" apply to both servers when given once, '
               'or to the source then the target when given twice.'
    )
    parser.add_argument('source', nargs='?', help='Source server URI, e.g. ldaps://ldap1.example.com')
    parser.add_argument('target', nargs='?', help='Target server URI, e.g. ldap://ldap2.example.com')
    parser.add_argument('-c', '--config', help='YAML configuration file')
    parser.add_argument('-D', '--binddn', action='append', help='Bind DN (once or twice)')
    parser.add_argument('-w', '--password', action='append', help='Bind password (once or twice)')
    parser.add_argument('-y', '--password-file', action='append', dest='password_file',
                        help='Read the bind password from a file (once or twice)')
    parser.add_argument('-b', '--base', action='append', help='Search base (once or twice)')
    parser.add_argument('-f', '--filter', action='append', help='Search filter (once or twice), '
                        'default (objectClass=*)')
    parser.add_argument('-s', '--scope', choices=VALID_SCOPES, help='Search scope for both servers, default sub')
    parser.add_argument('-Z', '--starttls', action='store_true', help='Require StartTLS on ldap:// connections')
    parser.add_argument('-n', '--dry-run', action='store_true', dest='dry_run',
                        help='Print the changes as LDIF instead of applying them')
    parser.add_argument('-o', '--output', help='Write dry-run LDIF to this file instead of stdout')
    parser.add_argument('-v', '--verbose', action='count', default=0, help='Increase verbosity (repeatable)')
    parser.add_argument('-d', '--debug', action='store_true', help='Show the full reconciliation trace')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    console_level = verbosity_level(args.verbose, args.debug)
    setup_logging({}, console_level)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_USAGE

    setup_logging(config.get('logging'), console_level)

    if args.output and not config.get('dry_run'):
        logger.warning("--output only applies to dry runs; ignoring it")
    elif args.output:
        return SyncOrchestrator(config, output_path=args.output).run()

    return SyncOrchestrator(config).run()


if __name__ == "__main__":
    sys.exit(main())
