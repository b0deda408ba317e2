"""
Sequential application of change records to the target directory.
"""

import logging
from typing import Iterable

from ldap_tree_sync.ldap_client import LDAPClient, LDAPWriteError
from ldap_tree_sync.models import AddEntry, ChangeRecord, ModifyEntry

logger = logging.getLogger(__name__)


class ApplyError(Exception):
    """Raised when a change record could not be written; later records are not attempted."""

    def __init__(self, record: ChangeRecord, applied: int, cause: Exception):
        self.record = record
        self.applied = applied
        self.cause = cause
        super().__init__(f"Failed to {record.changetype} {record.dn} after {applied} "
                         f"successful change(s): {cause}")


class Applier:
    """
    Writes change records to the target in order, stopping at the first failure.

    There is no retry and no rollback: records applied before a failure stay
    applied.
    """

    def __init__(self, client: LDAPClient):
        self.client = client
        self.applied = 0

    def apply(self, records: Iterable[ChangeRecord]) -> int:
        """
        Apply every record in order.

        Args:
            records: Change records from the reconciliation engine

        Returns:
            Number of records applied

        Raises:
            ApplyError: On the first record the target rejects
        """
        self.applied = 0
        for record in records:
            try:
                self._apply_one(record)
            except LDAPWriteError as e:
                logger.error(f"Aborting after {self.applied} change(s): {e}")
                raise ApplyError(record, self.applied, e) from e
            self.applied += 1
        logger.info(f"Applied {self.applied} change record(s)")
        return self.applied

    def _apply_one(self, record: ChangeRecord):
        if isinstance(record, AddEntry):
            self.client.add_entry(record.dn, record.attributes)
        elif isinstance(record, ModifyEntry):
            self.client.modify_entry(record.dn, list(record.attribute_ops))
        else:
            raise TypeError(f"Refusing to apply {type(record).__name__} for {record.dn}")
