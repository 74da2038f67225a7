"""
Failure fingerprinting.

Two runs that fail for the same reason should hash to the same value even
when timestamps, process ids, memory addresses, GUIDs, user paths or line
numbers differ. The fingerprint is the sole key used to group recurring
failures across unrelated runs, steps and runbooks.
"""

from __future__ import annotations

import hashlib
import re
from typing import List, Optional, Pattern, Tuple

MAX_TAIL_LINES = 50

# Applied in order; later patterns see the output of earlier ones.
_NORMALIZERS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\[?\d{4}-\d{2}-\d{2}[T\s]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?\]?"), "[TIME]"),
    (re.compile(r"\b\d{2}:\d{2}:\d{2}(?:[.,]\d+)?\b"), "[TIME]"),
    (
        re.compile(
            r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
        ),
        "[GUID]",
    ),
    (re.compile(r"\bat\s+0x[0-9a-fA-F]+"), "at [ADDR]"),
    (re.compile(r"0x[0-9a-fA-F]{6,16}\b"), "[ADDR]"),
    (re.compile(r"[A-Za-z]:\\(?:Users|home)\\[^\\\s]+\\[^\s:\"']+"), "[PATH]"),
    (re.compile(r"/(?:home|Users)/[^/\s]+/[^\s:\"']+"), "[PATH]"),
    (re.compile(r":\d+(?::\d+)?(?=[\s\),]|$)"), ":[LINE]"),
    (re.compile(r"\bline\s+\d+", re.IGNORECASE), "line [LINE]"),
    (re.compile(r"\b(?:PID|pid)[=:\s]*\d+"), "PID [N]"),
    (re.compile(r"\s+"), " "),
]


def normalize_line(line: str) -> str:
    """Strip run-specific noise from a single stderr line."""
    for pattern, replacement in _NORMALIZERS:
        line = pattern.sub(replacement, line)
    return line.strip()


def compute_fingerprint(exit_code: Optional[int], stderr: str) -> str:
    """
    Compute a stable fingerprint for a failed run.

    Args:
        exit_code: Process exit code, ``None`` when the process never exited
            normally (recorded as ``-1``)
        stderr: Full captured stderr text

    Returns:
        Lowercase hex SHA-256 digest
    """
    lines = [line for line in (stderr or "").splitlines() if line.strip()]
    tail = lines[-MAX_TAIL_LINES:]
    normalized = "\n".join(normalize_line(line) for line in tail)
    code = -1 if exit_code is None else exit_code
    material = f"exit:{code}\n{normalized}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def fingerprint_matches(left: Optional[str], right: Optional[str]) -> bool:
    """Return True when both fingerprints are present and equal."""
    return bool(left) and bool(right) and left == right


__all__ = ["MAX_TAIL_LINES", "compute_fingerprint", "fingerprint_matches", "normalize_line"]
