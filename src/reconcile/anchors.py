"""Anchor parser for resource query files.

A query file holds one or more blocks, each introduced by a marker line:

    /*+ exists */
    SELECT COUNT(*) as count FROM azure.resources.resource_groups
    WHERE subscriptionId = '{{ subscription_id }}'

    /*+ statecheck, retries=5, retry_delay=10 */
    SELECT ...

The text between a marker and the next one (or end of file) is that
anchor's template, trimmed. Text before the first marker is ignored, as
are blocks whose kind is not recognised.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from config import DUPLICATE_POLICIES, ConfigError
from reconcile.errors import AnchorParseError

logger = logging.getLogger(__name__)

ANCHOR_KINDS = (
    'exists',
    'create',
    'update',
    'createorupdate',
    'statecheck',
    'exports',
    'delete',
    'command',
)

# Legacy names accepted in query files
ANCHOR_ALIASES = {
    'preflight': 'exists',
    'postdeploy': 'statecheck',
}

# Integer attributes; defaults come from Settings
NUMERIC_OPTIONS = ('retries', 'retry_delay', 'postdelete_retries', 'postdelete_retry_delay')

MARKER_START = '/*+'
MARKER_END = '*/'


@dataclass(frozen=True)
class AnchorDef:
    """One anchor block: its kind, raw template and marker attributes."""
    kind: str
    template: str
    attributes: dict[str, str] = field(default_factory=dict)

    def option(self, name: str, default: int) -> int:
        """Numeric attribute value, or default when the marker does not set it."""
        if name in self.attributes:
            return int(self.attributes[name])
        return default


class AnchorSet(Mapping):
    """Anchor kind -> AnchorDef for one resource (at most one per kind)."""

    def __init__(self, anchors: Optional[dict[str, AnchorDef]] = None):
        self._anchors: dict[str, AnchorDef] = dict(anchors or {})

    def __getitem__(self, kind: str) -> AnchorDef:
        return self._anchors[kind]

    def __iter__(self) -> Iterator[str]:
        return iter(self._anchors)

    def __len__(self) -> int:
        return len(self._anchors)

    def __repr__(self) -> str:
        return f"AnchorSet({', '.join(self._anchors)})"


def _parse_marker(line: str, lineno: int) -> tuple[str, dict[str, str]]:
    """Parse a marker line into (kind, attributes).

    Raises:
        AnchorParseError: On an unterminated marker or malformed attribute
    """
    end = line.find(MARKER_END, len(MARKER_START))
    if end == -1:
        raise AnchorParseError(f"Line {lineno}: unterminated anchor marker: {line}")

    parts = line[len(MARKER_START):end].split(',')
    kind = parts[0].strip().lower()

    attributes: dict[str, str] = {}
    for part in parts[1:]:
        part = part.strip()
        if not part:
            continue
        if '=' not in part:
            raise AnchorParseError(f"Line {lineno}: attribute '{part}' is missing '='")
        key, value = part.split('=', 1)
        key = key.strip()
        value = value.strip()
        if not key:
            raise AnchorParseError(f"Line {lineno}: attribute with empty name in marker")
        if key in NUMERIC_OPTIONS:
            try:
                number = int(value)
            except ValueError:
                raise AnchorParseError(f"Line {lineno}: {key} must be an integer, got '{value}'")
            if number < 0 or (key == 'retries' and number < 1):
                raise AnchorParseError(f"Line {lineno}: {key} out of range: {number}")
        attributes[key] = value
    return kind, attributes


def parse_anchors(text: str, duplicates: str = 'first') -> AnchorSet:
    """Parse query file text into an AnchorSet.

    Args:
        text: Raw query file content
        duplicates: Policy for a repeated kind: 'first' keeps the first
            block, 'last' keeps the last, 'error' rejects the file

    Raises:
        AnchorParseError: On malformed marker syntax or a rejected duplicate
    """
    if duplicates not in DUPLICATE_POLICIES:
        raise ValueError(f"Unknown duplicate anchor policy: {duplicates}")

    anchors: dict[str, AnchorDef] = {}
    blocks: list[tuple[Optional[str], dict[str, str], list[str]]] = []
    current: Optional[tuple[Optional[str], dict[str, str], list[str]]] = None

    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if stripped.startswith(MARKER_START):
            kind, attributes = _parse_marker(stripped, lineno)
            kind = ANCHOR_ALIASES.get(kind, kind)
            if kind not in ANCHOR_KINDS:
                logger.debug(f"Ignoring unknown anchor '{kind}' at line {lineno}")
                current = (None, attributes, [])
            else:
                current = (kind, attributes, [])
            blocks.append(current)
        elif current is not None:
            current[2].append(line)

    for kind, attributes, lines in blocks:
        if kind is None:
            continue
        template = '\n'.join(lines).strip()
        if not template:
            continue
        if kind in anchors:
            if duplicates == 'error':
                raise AnchorParseError(f"Duplicate anchor '{kind}'")
            if duplicates == 'first':
                logger.debug(f"Ignoring duplicate anchor '{kind}'")
                continue
        anchors[kind] = AnchorDef(kind=kind, template=template, attributes=attributes)

    return AnchorSet(anchors)


def load_anchors(path: Path, duplicates: str = 'first') -> AnchorSet:
    """Read and parse a resource query file.

    Raises:
        ConfigError: If the file does not exist
        AnchorParseError: If the file is malformed
    """
    if not path.exists():
        raise ConfigError(f"Query file not found: {path}")
    text = path.read_text(encoding='utf-8')
    try:
        return parse_anchors(text, duplicates=duplicates)
    except AnchorParseError as e:
        raise AnchorParseError(f"{path}: {e.message}") from e
