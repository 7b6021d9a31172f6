"""Accessibility (axe-core, WCAG 2.2 AA) test output parsing."""

import re

_SUMMARY_RE = re.compile(r"Found (\d+) accessibility violation")
# One block per violation, e.g. "[1] COLOR_CONTRAST   Impact: serious"
_VIOLATION_BLOCK_RE = re.compile(r"\[(\d+)\] [A-Z_]+\s+Impact:")


def parse_violation_count(output: str) -> int:
    """Return the number of violations reported in Playwright output.

    Uses the larger of the first "Found N accessibility violation(s)" summary
    and the number of individual violation blocks.
    """
    count = 0
    match = _SUMMARY_RE.search(output or "")
    if match:
        count = int(match.group(1))
    return max(count, len(_VIOLATION_BLOCK_RE.findall(output or "")))
