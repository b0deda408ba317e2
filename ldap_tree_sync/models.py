"""
Data model for LDAP Tree Sync.

This module defines the read-only snapshot of a directory tree and the change
records produced when two snapshots are reconciled.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, NamedTuple, Tuple, Union

# Values are text; anything the server returns that is not valid UTF-8 stays raw.
AttributeValue = Union[str, bytes]
AttributeValues = Tuple[AttributeValue, ...]


class SidePair(NamedTuple):
    """One item per side of a reconciliation, source first."""
    source: object
    target: object


class Entry(Mapping):
    """
    Read-only mapping of attribute name to an ordered tuple of values.

    Value order is kept exactly as provided so entries can be re-emitted
    verbatim, but it carries no meaning for comparison.
    """

    __slots__ = ('_attributes',)

    def __init__(self, attributes: Mapping[str, Iterable[AttributeValue]] = None):
        attributes = attributes or {}
        self._attributes = MappingProxyType(
            {name: tuple(values) for name, values in attributes.items()}
        )

    def __getitem__(self, name: str) -> AttributeValues:
        return self._attributes[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._attributes)

    def __len__(self) -> int:
        return len(self._attributes)

    def __eq__(self, other):
        if isinstance(other, Mapping):
            return dict(self._attributes) == {k: tuple(v) for k, v in other.items()}
        return NotImplemented

    def __hash__(self):
        return hash(tuple(sorted(self._attributes.items(), key=lambda item: item[0])))

    def __repr__(self):
        return f"Entry({dict(self._attributes)!r})"


class Snapshot(Mapping):
    """
    Read-only mapping of distinguished name to Entry for one directory store.

    DNs are matched exactly as the server returned them.
    """

    __slots__ = ('_entries',)

    def __init__(self, entries: Mapping[str, Mapping[str, Iterable[AttributeValue]]] = None):
        entries = entries or {}
        self._entries = MappingProxyType({
            dn: attrs if isinstance(attrs, Entry) else Entry(attrs)
            for dn, attrs in entries.items()
        })

    def __getitem__(self, dn: str) -> Entry:
        return self._entries[dn]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self):
        return f"Snapshot({len(self._entries)} entries)"


def _require_values(attribute: str, values: Iterable[AttributeValue]) -> AttributeValues:
    values = tuple(values)
    if not values:
        raise ValueError(f"Attribute operation on '{attribute}' needs at least one value")
    return values


@dataclass(frozen=True)
class ReplaceValues:
    """Replace every value of an attribute with the given values."""
    attribute: str
    values: AttributeValues

    kind = 'replace'

    def __post_init__(self):
        object.__setattr__(self, 'values', _require_values(self.attribute, self.values))


@dataclass(frozen=True)
class AddValues:
    """Add values to an attribute, creating it if needed."""
    attribute: str
    values: AttributeValues

    kind = 'add'

    def __post_init__(self):
        object.__setattr__(self, 'values', _require_values(self.attribute, self.values))


@dataclass(frozen=True)
class DeleteValues:
    """
    Values present only in the target.

    Only ever built as a delete candidate for diagnostics; the engine never
    puts one inside a ModifyEntry.
    """
    attribute: str
    values: AttributeValues

    kind = 'delete'

    def __post_init__(self):
        object.__setattr__(self, 'values', _require_values(self.attribute, self.values))


AttributeOp = Union[ReplaceValues, AddValues]


@dataclass(frozen=True)
class AddEntry:
    """Create an entry with all of its attributes."""
    dn: str
    attributes: Entry

    changetype = 'add'

    def __post_init__(self):
        if not isinstance(self.attributes, Entry):
            object.__setattr__(self, 'attributes', Entry(self.attributes))


@dataclass(frozen=True)
class ModifyEntry:
    """Apply attribute operations to an existing entry in one request."""
    dn: str
    attribute_ops: Tuple[AttributeOp, ...] = field(default_factory=tuple)

    changetype = 'modify'

    def __post_init__(self):
        object.__setattr__(self, 'attribute_ops', tuple(self.attribute_ops))


@dataclass(frozen=True)
class DeleteEntry:
    """An entry present only in the target. Never emitted for execution."""
    dn: str

    changetype = 'delete'


ChangeRecord = Union[AddEntry, ModifyEntry]
