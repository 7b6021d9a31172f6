"""Test result parsers.

Functions:
    parse_junit_xml(content)                      -> list[TestResult]
    parse_vitest_json(content)                    -> list[TestResult]
    parse_test_results(directory, exclude=())     -> list[TestResult]

JUnit XML comes from Playwright / jest-junit, JSON from ``vitest --reporter=json``.
"""

import json
import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterable

from ci_pipeline.models import FAILED, PASSED, SKIPPED, TestResult

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 500
VITEST_RESULTS_NAME = "results.json"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_junit_xml(content: str) -> list[TestResult]:
    """Return one TestResult per ``<testcase>`` anywhere in the document.

    Works for both a single ``<testsuite>`` root and a ``<testsuites>`` wrapper.
    Malformed XML yields an empty list.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError:
        return []

    results: list[TestResult] = []
    for case in root.iter("testcase"):
        classname = case.get("classname", "")
        name = case.get("name", "")
        failure = case.find("failure")
        if failure is None:
            failure = case.find("error")

        if failure is not None:
            status = FAILED
            message = (failure.text or "").strip() or failure.get("message", "")
        elif case.find("skipped") is not None:
            status, message = SKIPPED, ""
        else:
            status, message = PASSED, ""

        results.append(TestResult(
            test_id=f"{classname}::{name}",
            test_name=name,
            test_file=classname,
            status=status,
            duration_ms=_seconds_to_ms(case.get("time")),
            error_message=message[:ERROR_MESSAGE_LIMIT],
        ))
    return results


def parse_vitest_json(content: str) -> list[TestResult]:
    """Return one TestResult per assertion in a Vitest JSON report.

    Vitest reports ``pending`` / ``todo`` / ``skipped`` for tests that did not
    run; those are mapped to ``skipped``. Malformed JSON yields an empty list.
    """
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, dict):
        return []

    results: list[TestResult] = []
    for file_result in parsed.get("testResults") or []:
        file_name = file_result.get("name", "")
        for test in file_result.get("assertionResults") or []:
            name = test.get("fullName") or test.get("title") or ""
            raw_status = test.get("status")
            if raw_status == PASSED:
                status = PASSED
            elif raw_status == FAILED:
                status = FAILED
            else:
                status = SKIPPED
            messages = test.get("failureMessages") or []

            results.append(TestResult(
                test_id=f"{file_name}::{name}",
                test_name=name,
                test_file=file_name,
                status=status,
                duration_ms=float(test.get("duration") or 0),
                error_message="\n".join(messages)[:ERROR_MESSAGE_LIMIT],
            ))
    return results


def parse_test_results(directory: str | Path, exclude: Iterable[str | Path] = ()) -> list[TestResult]:
    """Collect results from every JUnit XML and Vitest ``results.json`` under *directory*.

    Files below any directory in *exclude* are skipped, so the first-run scan
    of ``coverage`` does not pick up ``coverage/retry``.
    """
    root = Path(directory)
    if not root.is_dir():
        logger.info("Test results directory not found: %s", root)
        return []

    excluded = [Path(p).resolve() for p in exclude]
    results: list[TestResult] = []

    for path in sorted(root.rglob("*.xml")):
        if _is_excluded(path, excluded):
            continue
        content = _read(path)
        if content is not None:
            results.extend(parse_junit_xml(content))

    for path in sorted(root.rglob(VITEST_RESULTS_NAME)):
        if _is_excluded(path, excluded):
            continue
        content = _read(path)
        if content is not None:
            results.extend(parse_vitest_json(content))

    return results


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _seconds_to_ms(raw: str | None) -> float:
    try:
        return float(raw) * 1000
    except (TypeError, ValueError):
        return 0.0


def _is_excluded(path: Path, excluded: list[Path]) -> bool:
    resolved = path.resolve()
    return any(resolved.is_relative_to(e) for e in excluded)


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Could not parse %s: %s", path, exc)
        return None
