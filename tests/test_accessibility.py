"""Tests for ci_pipeline/reports/accessibility.py"""

from ci_pipeline.reports.accessibility import parse_violation_count

OUTPUT = """\
Running 12 tests using 4 workers
  ✘ [chromium] › accessibility/home.spec.ts:5:3 › home page is accessible
Found 2 accessibility violations:

[1] COLOR_CONTRAST   Impact: serious
    Elements must meet minimum color contrast ratio thresholds
[2] LABEL   Impact: critical
    Form elements must have labels
[3] IMAGE_ALT   Impact: critical
    Images must have alternate text
"""


def test_counts_violation_blocks_when_higher_than_summary():
    assert parse_violation_count(OUTPUT) == 3


def test_summary_count_when_blocks_missing():
    assert parse_violation_count("Found 5 accessibility violations in 2 pages") == 5


def test_single_violation_summary():
    assert parse_violation_count("Found 1 accessibility violation") == 1


def test_clean_run():
    assert parse_violation_count("  ✓ 12 passed (31.2s)\n") == 0


def test_empty_output():
    assert parse_violation_count("") == 0
    assert parse_violation_count(None) == 0
