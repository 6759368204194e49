"""SEARCH/REPLACE block parsing and application for edit_file.

Block format::

    <<<<<<< SEARCH
    old text
    =======
    new text
    >>>>>>> REPLACE
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_BLOCK_RE = re.compile(
    r"<{5,}\s*SEARCH[^\n]*\n(.*?)\n?={5,}[^\n]*\n(.*?)\n?>{5,}\s*REPLACE",
    re.DOTALL,
)


@dataclass
class EditBlock:
    search: str
    replace: str


@dataclass
class EditResult:
    content: str
    applied: int = 0
    errors: list[str] = field(default_factory=list)


def parse_blocks(text: str) -> list[EditBlock]:
    """Extract all SEARCH/REPLACE blocks from *text*, in order."""
    return [EditBlock(search=m.group(1), replace=m.group(2)) for m in _BLOCK_RE.finditer(text)]


def _find_unique(lines: list[str], needle: list[str], normalize: bool) -> int:
    """Index of the single occurrence of *needle* in *lines*; -1 if absent.

    Raises ValueError when the needle matches more than once.
    """
    if normalize:
        lines = [ln.strip() for ln in lines]
        needle = [ln.strip() for ln in needle]
    found = -1
    for idx in range(len(lines) - len(needle) + 1):
        if lines[idx: idx + len(needle)] == needle:
            if found >= 0:
                raise ValueError("search text is not unique")
            found = idx
    return found


def _apply_one(content: str, block: EditBlock) -> str:
    if not block.search.strip():
        raise ValueError("empty SEARCH section")

    count = content.count(block.search)
    if count > 1:
        raise ValueError("search text is not unique")
    if count == 1:
        return content.replace(block.search, block.replace, 1)

    # Fallback: match line-by-line ignoring surrounding whitespace
    lines = content.split("\n")
    needle = block.search.split("\n")
    idx = _find_unique(lines, needle, normalize=True)
    if idx < 0:
        raise ValueError("search text not found")
    logger.debug("Whitespace-insensitive match at line %d", idx + 1)
    lines[idx: idx + len(needle)] = block.replace.split("\n")
    return "\n".join(lines)


def apply_blocks(content: str, blocks: list[EditBlock]) -> EditResult:
    """Apply *blocks* sequentially. Any failing block leaves content unchanged."""
    result = EditResult(content=content)
    updated = content
    for n, block in enumerate(blocks, 1):
        try:
            updated = _apply_one(updated, block)
            result.applied += 1
        except ValueError as e:
            preview = block.search.strip().splitlines()[0][:80] if block.search.strip() else ""
            result.errors.append(f"Block {n}: {e}: {preview!r}")
    if not result.errors:
        result.content = updated
    return result


def line_changes(old: str, new: str) -> tuple[int, int]:
    """Return (added, removed) line counts between two texts."""
    added = removed = 0
    for line in difflib.unified_diff(old.splitlines(), new.splitlines(), lineterm="", n=0):
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    return added, removed
