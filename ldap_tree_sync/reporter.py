"""
LDIF rendering of change records for dry runs and verbose output.
"""

import base64
import re
from typing import Iterable, List

from ldap_tree_sync.models import AddEntry, AttributeValue, ChangeRecord, ModifyEntry

# RFC 2849 SAFE-STRING: no leading space, colon or '<', ASCII without NUL/CR/LF.
_SAFE_STRING = re.compile(r'^(?![ :<])[\x01-\x09\x0b\x0c\x0e-\x7f]*$')


def _line(name: str, value: AttributeValue) -> str:
    if isinstance(value, str) and _SAFE_STRING.match(value) and not value.endswith(' '):
        return f"{name}: {value}"
    raw = value if isinstance(value, bytes) else value.encode('utf-8')
    return f"{name}:: {base64.b64encode(raw).decode('ascii')}"


def render(record: ChangeRecord) -> str:
    """
    Render one change record as an LDIF change block.

    Args:
        record: AddEntry or ModifyEntry

    Returns:
        LDIF text without a trailing blank line
    """
    lines = [_line('dn', record.dn), f"changetype: {record.changetype}"]

    if isinstance(record, AddEntry):
        for name, values in record.attributes.items():
            lines.extend(_line(name, value) for value in values)
    elif isinstance(record, ModifyEntry):
        for op in record.attribute_ops:
            lines.append(f"{op.kind}: {op.attribute}")
            lines.extend(_line(op.attribute, value) for value in op.values)
            lines.append('-')
    else:
        raise TypeError(f"Cannot render {type(record).__name__} as a change record")

    return '\n'.join(lines)


def render_all(records: Iterable[ChangeRecord]) -> str:
    """Render records as a complete LDIF document."""
    blocks: List[str] = ['version: 1']
    blocks.extend(render(record) for record in records)
    return '\n\n'.join(blocks) + '\n'
