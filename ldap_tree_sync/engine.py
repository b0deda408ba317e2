"""
Reconciliation engine for LDAP Tree Sync.

This module compares a source and a target snapshot and produces the change
records that make the target match the source. It performs no I/O and never
consults configuration: the result depends only on the two snapshots.

Deletions are one-sided by policy. Entries and values that exist only in the
target are classified as delete candidates and reported, but never turned
into change records.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

from ldap_tree_sync.models import (
    AddEntry,
    AddValues,
    AttributeOp,
    AttributeValue,
    AttributeValues,
    ChangeRecord,
    DeleteEntry,
    DeleteValues,
    Entry,
    ModifyEntry,
    ReplaceValues,
    SidePair,
    Snapshot,
)

logger = logging.getLogger(__name__)


class ReconcileInvariantError(Exception):
    """Raised when the engine reaches a state its classification rules exclude."""
    pass


class ValueCounter:
    """
    Multiset of attribute values, counted separately for each side.

    A value is attributed to a side by presence: it is an addition when the
    source holds it at least once and the target never does, a delete
    candidate in the mirrored case, and unchanged when both sides hold it.
    Duplicates within one side therefore never turn into extra additions.
    """

    def __init__(self, source_values: Iterable[AttributeValue], target_values: Iterable[AttributeValue]):
        self.order = SidePair(tuple(source_values), tuple(target_values))
        self.counts = SidePair(Counter(self.order.source), Counter(self.order.target))

    def _only_in(self, values: AttributeValues, other: Counter) -> AttributeValues:
        seen = set()
        result = []
        for value in values:
            if value in seen or other[value]:
                continue
            seen.add(value)
            result.append(value)
        return tuple(result)

    def added(self) -> AttributeValues:
        """Values present in the source and absent from the target, in source order."""
        return self._only_in(self.order.source, self.counts.target)

    def removed(self) -> AttributeValues:
        """Values present in the target and absent from the source, in target order."""
        return self._only_in(self.order.target, self.counts.source)

    def unchanged(self) -> AttributeValues:
        """Values present on both sides, in source order."""
        seen = set()
        result = []
        for value in self.order.source:
            if value not in seen and self.counts.target[value]:
                seen.add(value)
                result.append(value)
        return tuple(result)


@dataclass
class ReconcileResult:
    """Records to execute plus the delete candidates that policy suppresses."""
    records: List[ChangeRecord] = field(default_factory=list)
    deleted_entries: List[DeleteEntry] = field(default_factory=list)
    deleted_values: List[Tuple[str, DeleteValues]] = field(default_factory=list)

    @property
    def entries_added(self) -> int:
        return sum(1 for record in self.records if isinstance(record, AddEntry))

    @property
    def entries_modified(self) -> int:
        return sum(1 for record in self.records if isinstance(record, ModifyEntry))

    @property
    def attribute_ops(self) -> int:
        return sum(len(record.attribute_ops) for record in self.records
                   if isinstance(record, ModifyEntry))


def dn_sort_key(dn: str) -> Tuple[int, str]:
    """Order DNs so that parents always sort before their children."""
    try:
        depth = len(parse_dn(dn))
    except LDAPInvalidDnError:
        depth = dn.count(',') + 1
    return depth, dn


class Reconciler:
    """
    Compares two snapshots and classifies every difference.

    The same instance can be reused; each call to :meth:`run` starts from a
    fresh result.
    """

    def run(self, source: Snapshot, target: Snapshot) -> ReconcileResult:
        """
        Reconcile the target against the source.

        Args:
            source: Snapshot of the authoritative store
            target: Snapshot of the store to bring in line

        Returns:
            ReconcileResult with records sorted parent-first by DN

        Raises:
            ReconcileInvariantError: If a DN is found in neither snapshot
        """
        result = ReconcileResult()
        stores = SidePair(source, target)
        all_dns = set(source) | set(target)

        logger.debug(f"Reconciling {len(source)} source entries against {len(target)} target entries")

        for dn in sorted(all_dns, key=dn_sort_key):
            record = self._reconcile_dn(dn, stores, result)
            if record is not None:
                result.records.append(record)

        logger.debug(f"Reconciliation produced {len(result.records)} change records, "
                     f"{len(result.deleted_entries)} entry delete candidates, "
                     f"{len(result.deleted_values)} value delete candidates")
        return result

    def _reconcile_dn(self, dn: str, stores: SidePair, result: ReconcileResult) -> Optional[ChangeRecord]:
        in_source = dn in stores.source
        in_target = dn in stores.target

        if in_source and not in_target:
            logger.debug(f"{dn}: only in source, adding entry")
            return AddEntry(dn, stores.source[dn])

        if in_target and not in_source:
            logger.debug(f"{dn}: only in target, delete candidate not applied")
            result.deleted_entries.append(DeleteEntry(dn))
            return None

        if in_source and in_target:
            ops = self._reconcile_entry(dn, SidePair(stores.source[dn], stores.target[dn]), result)
            if ops:
                return ModifyEntry(dn, ops)
            return None

        raise ReconcileInvariantError(f"DN {dn!r} is in neither snapshot")

    def _reconcile_entry(self, dn: str, entries: SidePair, result: ReconcileResult) -> List[AttributeOp]:
        source_entry: Entry = entries.source
        target_entry: Entry = entries.target

        ops = []
        names = list(source_entry) + [name for name in target_entry if name not in source_entry]

        for name in names:
            if name not in target_entry:
                values = source_entry[name]
                if values:
                    logger.debug(f"{dn}: attribute {name} only in source, adding {len(values)} value(s)")
                    ops.append(AddValues(name, values))
                continue

            if name not in source_entry:
                values = target_entry[name]
                logger.debug(f"{dn}: attribute {name} only in target, delete candidate not applied")
                if values:
                    result.deleted_values.append((dn, DeleteValues(name, values)))
                continue

            op = self._reconcile_attribute(dn, name, SidePair(source_entry[name], target_entry[name]), result)
            if op is not None:
                ops.append(op)

        return ops

    def _reconcile_attribute(self, dn: str, name: str, values: SidePair,
                             result: ReconcileResult) -> Optional[AttributeOp]:
        if len(values.source) == 1 and len(values.target) == 1:
            if values.source[0] == values.target[0]:
                return None
            logger.debug(f"{dn}: single-valued attribute {name} differs, replacing")
            return ReplaceValues(name, values.source)

        counter = ValueCounter(values.source, values.target)
        logger.debug(f"{dn}: {len(counter.unchanged())} value(s) of {name} unchanged")

        removed = counter.removed()
        if removed:
            logger.debug(f"{dn}: {len(removed)} value(s) of {name} only in target, delete candidate not applied")
            result.deleted_values.append((dn, DeleteValues(name, removed)))

        added = counter.added()
        if added:
            logger.debug(f"{dn}: adding {len(added)} value(s) to {name}")
            return AddValues(name, added)
        return None


def reconcile(source: Snapshot, target: Snapshot) -> List[ChangeRecord]:
    """
    Compute the change records that make ``target`` match ``source``.

    Convenience wrapper around :class:`Reconciler` returning only the records.
    """
    return Reconciler().run(source, target).records
