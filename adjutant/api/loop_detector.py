"""Runaway-repetition detection for model tool calls.

Each proposed batch is checked against a bounded ring buffer of recent
call signatures. Three rules run in order:

1. Exact repeat: same tool with the same normalized-argument hash.
2. Same-target repeat: same tool on the same path/command/query, with a
   stricter threshold for write-classified tools.
3. Cycle: the tail of history + batch is a repeating block of 2 or 3.

Signatures are recorded only for batches that pass, so a tripped batch
never pollutes the history. One detector per session.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from adjutant.api.models import LoopSignature, ToolCall

logger = logging.getLogger(__name__)

# Argument names probed, in order, for the call's target
KEY_PARAMS = ("path", "file", "command", "query")


@dataclass
class LoopCheck:
    is_loop: bool
    reason: str = ""
    tool_name: str | None = None


def _hash_args(args: dict[str, Any]) -> str:
    normalized = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


def make_signature(call: ToolCall) -> LoopSignature:
    """Build the fingerprint for a single tool call."""
    key = None
    for param in KEY_PARAMS:
        value = call.arguments.get(param)
        if isinstance(value, str) and value:
            key = value
            break
    return LoopSignature(name=call.name, key_param=key, args_hash=_hash_args(call.arguments))


def _same(a: LoopSignature, b: LoopSignature) -> bool:
    return a.name == b.name and a.args_hash == b.args_hash


class LoopDetector:
    """Flags tool-call batches that repeat recent work.

    Args:
        is_write: Predicate naming write-classified tools. Unknown tools
            are treated as reads.
        history_size: Ring buffer capacity.
        exact_threshold: History matches that trip the exact-repeat rule.
        target_threshold: Same-target matches that trip for reads.
        write_target_threshold: Same-target matches that trip for writes.
    """

    def __init__(
        self,
        is_write: Callable[[str], bool] | None = None,
        history_size: int = 15,
        exact_threshold: int = 2,
        target_threshold: int = 3,
        write_target_threshold: int = 2,
    ) -> None:
        self._is_write = is_write or (lambda name: False)
        self._history: deque[LoopSignature] = deque(maxlen=history_size)
        self.exact_threshold = exact_threshold
        self.target_threshold = target_threshold
        self.write_target_threshold = write_target_threshold

    @property
    def history(self) -> list[LoopSignature]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()

    def check(self, calls: Sequence[ToolCall]) -> LoopCheck:
        """Evaluate a batch; record it when no rule matches."""
        if not calls:
            return LoopCheck(is_loop=False)

        signatures = [make_signature(c) for c in calls]
        result = (
            self._check_exact(signatures)
            or self._check_same_target(signatures)
            or self._check_cycle(signatures)
        )
        if result is not None:
            logger.warning("Loop detected: %s", result.reason)
            return result

        self._history.extend(signatures)
        return LoopCheck(is_loop=False)

    def _check_exact(self, signatures: list[LoopSignature]) -> LoopCheck | None:
        for sig in signatures:
            matches = sum(1 for h in self._history if _same(h, sig))
            if matches >= self.exact_threshold:
                return LoopCheck(
                    is_loop=True,
                    reason=f"Detected exact repeat of {sig.name} ({matches + 1} times).",
                    tool_name=sig.name,
                )
        return None

    def _check_same_target(self, signatures: list[LoopSignature]) -> LoopCheck | None:
        for sig in signatures:
            if sig.key_param is None:
                continue
            matches = sum(
                1 for h in self._history if h.name == sig.name and h.key_param == sig.key_param
            )
            threshold = self.write_target_threshold if self._is_write(sig.name) else self.target_threshold
            if matches >= threshold:
                return LoopCheck(
                    is_loop=True,
                    reason=f'Detected repeated {sig.name} on "{sig.key_param}" ({matches + 1} times).',
                    tool_name=sig.name,
                )
        return None

    def _check_cycle(self, signatures: list[LoopSignature]) -> LoopCheck | None:
        combined = [*self._history, *signatures]
        if len(combined) < 4:
            return None
        for period in (2, 3):
            if len(combined) < period * 2:
                continue
            tail = combined[-period * 2:]
            first, second = tail[:period], tail[period:]
            if all(_same(a, b) for a, b in zip(first, second)):
                pattern = " -> ".join(s.name for s in first)
                return LoopCheck(
                    is_loop=True,
                    reason=f"Detected repeating pattern: {pattern}.",
                    tool_name=first[0].name,
                )
        return None
