"""Flaky-test detection and quarantine bookkeeping.

A test is flaky when it fails on the first run and passes on the immediate
retry. Every occurrence is recorded in a JSON quarantine file; once a test has
been flaky ``threshold`` times it is quarantined for good.

Functions:
    analyze_results(results_dir, retry_dir, quarantine, ...)   -> dict
    update_quarantine_data(quarantine, flaky_tests, ...)       -> dict
    load_quarantine(path) / save_quarantine(quarantine, path)
    format_flaky_report(flaky_tests)                           -> str
    create_flaky_test_issue(client, owner, repo, flaky_tests, build) -> int | None
    quarantined_patterns(quarantine) / exclude_args(quarantine)
"""

import copy
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from ci_pipeline.client import GitHubClient, GitHubClientError
from ci_pipeline.environment import BuildEnvironment
from ci_pipeline.models import FlakyTest, TestResult
from ci_pipeline.reports.results import parse_test_results

logger = logging.getLogger(__name__)

QUARANTINE_VERSION = 1
DEFAULT_THRESHOLD = 3
DEFAULT_HISTORY_LIMIT = 10
HISTORY_ERROR_LIMIT = 200
ISSUE_LABELS = ["testing", "flaky-test", "ci"]

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_PATTERN_UNSAFE = re.compile(r"[^a-zA-Z0-9\s]")


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def analyze_results(
    results_dir: str | Path,
    retry_dir: str | Path | None = None,
    quarantine: dict | None = None,
    *,
    build_number: str | None = None,
    threshold: int = DEFAULT_THRESHOLD,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
    now: datetime | None = None,
) -> dict:
    """Compare first-run failures with retry results.

    Returns a dict with ``flaky_tests`` (list[FlakyTest]),
    ``consistent_failures`` (list[TestResult]), ``first_run_failures`` (int)
    and the updated ``quarantine`` document.
    """
    results_dir = Path(results_dir)
    retry_dir = Path(retry_dir) if retry_dir else results_dir / "retry"
    detected_at = _timestamp(now)

    first_run = parse_test_results(results_dir, exclude=[retry_dir])
    failures = [r for r in first_run if r.failed]
    retries = {r.test_id: r for r in parse_test_results(retry_dir)}

    flaky_tests: list[FlakyTest] = []
    consistent_failures: list[TestResult] = []

    for failure in failures:
        retry = retries.get(failure.test_id)
        if retry is not None and retry.passed:
            flaky_tests.append(FlakyTest(
                test_id=failure.test_id,
                test_name=failure.test_name,
                test_file=failure.test_file,
                first_run_error=failure.error_message,
                retry_duration_ms=retry.duration_ms,
                detected_at=detected_at,
            ))
        elif retry is None or retry.failed:
            consistent_failures.append(failure)

    logger.info("First run failures: %d", len(failures))
    logger.info("Flaky tests detected: %d", len(flaky_tests))
    logger.info("Consistent failures: %d", len(consistent_failures))

    updated = update_quarantine_data(
        quarantine if quarantine is not None else empty_quarantine(),
        flaky_tests,
        build_number=build_number,
        threshold=threshold,
        history_limit=history_limit,
        now=now,
    )
    return {
        "flaky_tests": flaky_tests,
        "consistent_failures": consistent_failures,
        "first_run_failures": len(failures),
        "quarantine": updated,
    }


def update_quarantine_data(
    quarantine: dict,
    flaky_tests: list[FlakyTest],
    *,
    build_number: str | None = None,
    threshold: int = DEFAULT_THRESHOLD,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
    now: datetime | None = None,
) -> dict:
    """Return a copy of *quarantine* with one more occurrence per flaky test.

    ``quarantined`` only ever flips from false to true.
    """
    updated = copy.deepcopy(quarantine)
    tests = updated.get("tests") or {}

    for flaky in flaky_tests:
        entry = tests.get(flaky.test_id) or {
            "testId": flaky.test_id,
            "testName": flaky.test_name,
            "testFile": flaky.test_file,
            "occurrences": 0,
            "firstSeen": flaky.detected_at,
            "lastSeen": None,
            "quarantined": False,
            "history": [],
        }

        entry["occurrences"] = (entry.get("occurrences") or 0) + 1
        entry["lastSeen"] = flaky.detected_at
        history = (entry.get("history") or []) + [{
            "date": flaky.detected_at,
            "error": (flaky.first_run_error or "")[:HISTORY_ERROR_LIMIT],
            "build": build_number,
        }]
        entry["history"] = history[-history_limit:]

        if entry["occurrences"] >= threshold and not entry.get("quarantined"):
            entry["quarantined"] = True
            entry["quarantinedAt"] = flaky.detected_at
            logger.info(
                "Auto-quarantining flaky test: %s (%d occurrences)",
                flaky.test_name, entry["occurrences"],
            )

        tests[flaky.test_id] = entry

    updated["tests"] = tests
    updated["lastUpdated"] = _timestamp(now)
    updated.setdefault("version", QUARANTINE_VERSION)
    return updated


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def empty_quarantine() -> dict:
    return {"tests": {}, "lastUpdated": None, "version": QUARANTINE_VERSION}


def load_quarantine(path: str | Path) -> dict:
    """Load the quarantine file, or an empty document if it is missing or unreadable."""
    path = Path(path)
    if not path.exists():
        logger.info("No quarantine file at %s, starting fresh", path)
        return empty_quarantine()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not load quarantine file: %s", exc)
        return empty_quarantine()

    if not isinstance(data, dict):
        logger.warning("Could not load quarantine file: '%s' is not a JSON object", path)
        return empty_quarantine()

    tests = data.get("tests")
    if tests is None:
        tests = {}
    if not isinstance(tests, dict):
        logger.warning("Could not load quarantine file: 'tests' in '%s' is not a JSON object", path)
        return empty_quarantine()

    invalid = [test_id for test_id, entry in tests.items() if not isinstance(entry, dict)]
    for test_id in invalid:
        logger.warning("Dropping malformed quarantine entry: %s", test_id)
        del tests[test_id]
    data["tests"] = tests
    return data


def save_quarantine(quarantine: dict, path: str | Path) -> None:
    path = Path(path)
    path.write_text(json.dumps(quarantine, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    logger.info("Quarantine data saved to %s", path)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def format_flaky_report(flaky_tests: list[FlakyTest]) -> str:
    if not flaky_tests:
        return "No flaky tests detected"

    lines = [
        "=== Flaky Test Report ===",
        f"Detected {len(flaky_tests)} flaky test(s) in this build",
        "",
    ]
    for test in flaky_tests:
        lines += [
            f"FLAKY: {test.test_name}",
            f"   File: {test.test_file}",
            f"   Error: {(test.first_run_error or '')[:100] or 'Unknown'}",
            "",
        ]
    lines.append("=== End Flaky Test Report ===")
    return "\n".join(lines)


def build_issue(flaky_tests: list[FlakyTest], build: BuildEnvironment) -> dict:
    """Title, body and labels for the GitHub issue announcing flaky tests."""
    branch = build.branch_name or "unknown"
    number = build.build_number

    entries = "\n".join(
        f"- **{t.test_name}**\n"
        f"  - File: `{t.test_file}`\n"
        f"  - Error: `{(t.first_run_error or '')[:HISTORY_ERROR_LIMIT] or 'Unknown'}`\n"
        for t in flaky_tests
    )
    body = f"""## Flaky Tests Detected

**Branch:** {branch}
**Build:** [#{number}]({build.build_url})
**Tests Affected:** {len(flaky_tests)}

### Flaky Tests

{entries}
### What Makes a Test Flaky?

A test is marked as flaky when it fails on the first attempt but passes on retry.
This indicates non-deterministic behavior that should be investigated.

### Common Causes

- Race conditions in async code
- Timing-dependent assertions
- External service dependencies
- Shared state between tests
- Database cleanup issues

### Next Steps

1. Review the test implementation
2. Add proper waits/retries if timing-dependent
3. Mock external dependencies
4. Ensure proper test isolation

---
_Auto-generated by CI_
"""
    return {
        "title": f"CI: {len(flaky_tests)} flaky test(s) detected in build #{number}",
        "body": body,
        "labels": list(ISSUE_LABELS),
    }


def create_flaky_test_issue(
    client: GitHubClient,
    owner: str,
    repo: str,
    flaky_tests: list[FlakyTest],
    build: BuildEnvironment,
) -> int | None:
    """Open a GitHub issue listing *flaky_tests*; returns its number or None."""
    if not flaky_tests:
        return None

    try:
        data = client.post(f"/repos/{owner}/{repo}/issues", build_issue(flaky_tests, build))
    except GitHubClientError as exc:
        logger.warning("Could not create flaky test issue: %s", exc)
        return None

    number = data.get("number") if isinstance(data, dict) else None
    logger.info("Created flaky test issue #%s", number)
    return number


# ---------------------------------------------------------------------------
# Test runner integration
# ---------------------------------------------------------------------------

def quarantined_patterns(quarantine: dict) -> list[str]:
    """Grep-compatible name patterns for every quarantined test."""
    patterns = []
    for data in (quarantine.get("tests") or {}).values():
        if data.get("quarantined"):
            patterns.append(_PATTERN_UNSAFE.sub(".", data.get("testName") or ""))
    return patterns


def exclude_args(quarantine: dict) -> str:
    """``vitest --exclude`` arguments for every quarantined test file."""
    excludes = []
    for data in (quarantine.get("tests") or {}).values():
        test_file = data.get("testFile")
        if data.get("quarantined") and test_file:
            arg = f"--exclude='{test_file}'"
            if arg not in excludes:
                excludes.append(arg)
    return " ".join(excludes)


def _timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime(_TIMESTAMP_FORMAT)
