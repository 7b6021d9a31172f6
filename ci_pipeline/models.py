"""Data models shared by the result parsers and the flaky-test analysis.

Contains dataclasses used to structure and serialize the JSON output:
    - TestResult   one test case outcome from a JUnit XML or Vitest JSON report
    - FlakyTest    a test that failed on the first run and passed on retry
"""

from dataclasses import asdict, dataclass

PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class TestResult:
    __test__ = False  # not a pytest test class

    test_id: str
    test_name: str
    test_file: str
    status: str
    duration_ms: float = 0.0
    error_message: str = ""

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    @property
    def passed(self) -> bool:
        return self.status == PASSED

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FlakyTest:
    test_id: str
    test_name: str
    test_file: str
    first_run_error: str
    retry_duration_ms: float
    detected_at: str

    def to_dict(self) -> dict:
        return asdict(self)
