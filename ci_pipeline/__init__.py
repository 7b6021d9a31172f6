"""CI pipeline helpers: test stages, Docker environments, flaky-test quarantine."""

__version__ = "0.1.0"
