"""Line-level deltas between two text revisions.

A delta is an ordered list of ``retain``, ``delete`` and ``insert``
operations. Positions are character offsets into the *original* text:
``retain`` and ``delete`` advance through it, ``insert`` does not.
:func:`apply_delta` replays the operations while tracking how far earlier
inserts and deletes have shifted the text.

The diff walks both line sequences with a single line of lookahead. It is
not a longest-common-subsequence diff, so multi-line moves produce larger
deltas than necessary, but applying a delta always reproduces the target.

Examples:
    >>> delta = compute_delta("a\\nb\\nc\\n", "a\\nx\\nc\\n")
    >>> [(op.type.value, op.position) for op in delta.operations]
    [('retain', 0), ('delete', 2), ('insert', 4), ('retain', 4)]
    >>> apply_delta("a\\nb\\nc\\n", delta)
    'a\\nx\\nc\\n'
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..exceptions import VaultDeltaIntegrityError
from ..utils import DEFAULT_DELTA_THRESHOLD, sha256_hex

logger = logging.getLogger(__name__)


class DeltaOpType(str, Enum):
    """Kinds of delta operations."""

    RETAIN = "retain"
    DELETE = "delete"
    INSERT = "insert"


@dataclass
class DeltaOperation:
    """A single edit in original-text coordinates."""

    type: DeltaOpType
    position: int
    length: int = 0
    """Characters retained or deleted (unused for inserts)"""

    content: str = ""
    """Inserted text (unused for retain/delete)"""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "position": self.position}
        if self.type == DeltaOpType.INSERT:
            data["content"] = self.content
        else:
            data["length"] = self.length
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeltaOperation":
        return cls(
            type=DeltaOpType(data["type"]),
            position=int(data["position"]),
            length=int(data.get("length", 0)),
            content=data.get("content", ""),
        )


@dataclass
class Delta:
    """Edit script turning the base revision into the target revision."""

    operations: list[DeltaOperation] = field(default_factory=list)
    base_hash: str = ""
    """SHA-256 of the text the delta applies to"""

    target_hash: str = ""
    """SHA-256 of the text the delta produces"""

    size: int = 0
    """Size in bytes of the encoded operation list"""


def split_lines(text: str) -> list[str]:
    """Split text into lines, keeping the ``\\n`` terminators.

    The last line has no terminator if the text does not end with one.

    Examples:
        >>> split_lines("a\\nb")
        ['a\\n', 'b']
        >>> split_lines("")
        []
    """
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _coalesce(operations: list[DeltaOperation]) -> list[DeltaOperation]:
    """Merge adjacent operations of the same type."""
    merged: list[DeltaOperation] = []
    for op in operations:
        if merged and merged[-1].type == op.type:
            last = merged[-1]
            if op.type == DeltaOpType.INSERT:
                last.content += op.content
            else:
                last.length += op.length
            continue
        merged.append(op)
    return merged


def _encoded_size(operations: list[DeltaOperation]) -> int:
    payload = json.dumps([op.to_dict() for op in operations], separators=(",", ":"))
    return len(payload.encode("utf-8"))


def compute_delta(old: str, new: str) -> Delta:
    """Compute a line-level delta from ``old`` to ``new``.

    Args:
        old: Base revision
        new: Target revision

    Returns:
        Delta with coalesced operations, hashes and encoded size
    """
    old_lines = split_lines(old)
    new_lines = split_lines(new)
    ops: list[DeltaOperation] = []

    i = j = 0
    position = 0
    while i < len(old_lines) and j < len(new_lines):
        old_line = old_lines[i]
        new_line = new_lines[j]

        if old_line == new_line:
            ops.append(DeltaOperation(DeltaOpType.RETAIN, position, len(old_line)))
            position += len(old_line)
            i += 1
            j += 1
        elif i + 1 < len(old_lines) and old_lines[i + 1] == new_line:
            # Old line was removed
            ops.append(DeltaOperation(DeltaOpType.DELETE, position, len(old_line)))
            position += len(old_line)
            i += 1
        elif j + 1 < len(new_lines) and new_lines[j + 1] == old_line:
            # New line was added
            ops.append(DeltaOperation(DeltaOpType.INSERT, position, content=new_line))
            j += 1
        else:
            # Replacement
            ops.append(DeltaOperation(DeltaOpType.DELETE, position, len(old_line)))
            position += len(old_line)
            ops.append(DeltaOperation(DeltaOpType.INSERT, position, content=new_line))
            i += 1
            j += 1

    for old_line in old_lines[i:]:
        ops.append(DeltaOperation(DeltaOpType.DELETE, position, len(old_line)))
        position += len(old_line)
    for new_line in new_lines[j:]:
        ops.append(DeltaOperation(DeltaOpType.INSERT, position, content=new_line))

    operations = _coalesce(ops)
    return Delta(
        operations=operations,
        base_hash=sha256_hex(old),
        target_hash=sha256_hex(new),
        size=_encoded_size(operations),
    )


def apply_delta(content: str, delta: Delta) -> str:
    """Apply a delta to ``content``.

    Args:
        content: Base revision the delta was computed against
        delta: Delta to replay

    Returns:
        The target revision
    """
    result = content
    offset = 0
    for op in delta.operations:
        actual = op.position + offset
        if op.type == DeltaOpType.DELETE:
            result = result[:actual] + result[actual + op.length :]
            offset -= op.length
        elif op.type == DeltaOpType.INSERT:
            result = result[:actual] + op.content + result[actual:]
            offset += len(op.content)
    return result


def verify_delta(content: str, delta: Delta) -> str:
    """Apply a delta and check the result against its target hash.

    Args:
        content: Base revision
        delta: Delta to apply

    Returns:
        The verified target revision

    Raises:
        VaultDeltaIntegrityError: If the base or the result hash does not match
    """
    if delta.base_hash and sha256_hex(content) != delta.base_hash:
        raise VaultDeltaIntegrityError(
            "Delta base hash does not match the current content",
            context={"expected": delta.base_hash},
        )
    result = apply_delta(content, delta)
    actual_hash = sha256_hex(result)
    if actual_hash != delta.target_hash:
        raise VaultDeltaIntegrityError(
            "Delta result hash mismatch",
            context={"expected": delta.target_hash, "actual": actual_hash},
        )
    return result


def should_use_delta(size: int, threshold: int = DEFAULT_DELTA_THRESHOLD) -> bool:
    """Whether a file of ``size`` bytes is large enough for delta transfer."""
    return size > threshold


def delta_stats(delta: Delta, target_size: Optional[int] = None) -> dict[str, Any]:
    """Summarize a delta.

    Args:
        delta: Delta to describe
        target_size: Size of the full target content, for the compression ratio

    Returns:
        Dictionary with operation counts, affected characters and
        ``compression_ratio`` (delta size / full size, None if unknown)
    """
    stats: dict[str, Any] = {
        "operations": len(delta.operations),
        "inserts": 0,
        "deletes": 0,
        "retains": 0,
        "inserted_chars": 0,
        "deleted_chars": 0,
        "size": delta.size,
        "compression_ratio": None,
    }
    for op in delta.operations:
        if op.type == DeltaOpType.INSERT:
            stats["inserts"] += 1
            stats["inserted_chars"] += len(op.content)
        elif op.type == DeltaOpType.DELETE:
            stats["deletes"] += 1
            stats["deleted_chars"] += op.length
        else:
            stats["retains"] += 1
    if target_size:
        stats["compression_ratio"] = delta.size / target_size
    return stats


def encode_delta(delta: Delta) -> dict[str, Any]:
    """Convert a delta to its JSON wire form."""
    return {
        "operations": [op.to_dict() for op in delta.operations],
        "baseHash": delta.base_hash,
        "targetHash": delta.target_hash,
        "size": delta.size,
    }


def decode_delta(data: dict[str, Any]) -> Delta:
    """Build a delta from its JSON wire form."""
    operations = [DeltaOperation.from_dict(op) for op in data.get("operations", [])]
    return Delta(
        operations=operations,
        base_hash=data.get("baseHash", ""),
        target_hash=data.get("targetHash", ""),
        size=int(data.get("size", _encoded_size(operations))),
    )
