"""Tests for ci_pipeline/stages.py"""

import os

import pytest

from ci_pipeline import docker, stages
from ci_pipeline.stages import (
    StageError,
    build_packages,
    generate_sbom,
    install_dependencies,
    run_accessibility_tests,
    run_build,
    run_integration_tests,
    run_lint_checks,
    run_unit_tests,
    scan_container_image,
)


class FakeReporter:
    """Records statuses instead of posting them."""

    def __init__(self) -> None:
        self.statuses: list[tuple[str, str, str]] = []

    def _record(self, state, context, description):
        self.statuses.append((state, context, description))
        return True

    def pending(self, context, description="Build in progress"):
        return self._record("pending", context, description)

    def success(self, context, description="Build succeeded"):
        return self._record("success", context, description)

    def failure(self, context, description="Build failed"):
        return self._record("failure", context, description)

    @property
    def states(self) -> list[str]:
        return [s[0] for s in self.statuses]


@pytest.fixture
def reporter() -> FakeReporter:
    return FakeReporter()


# ---------------------------------------------------------------------------
# install_dependencies
# ---------------------------------------------------------------------------

def test_npm_install_runs_ci_and_records_lockfile(fake_shell, tmp_path):
    (tmp_path / "package-lock.json").write_text('{"lockfileVersion": 3}')

    assert install_dependencies(tmp_path) is True

    assert ["npm", "config", "set", "registry", "https://registry.npmjs.org/"] in fake_shell.calls
    assert fake_shell.calls[-1] == ["npm", "ci", "--legacy-peer-deps"]
    assert fake_shell.kwargs[-1]["check"] is True
    # node_modules does not exist in the fake run, so nothing to copy into
    assert not (tmp_path / "node_modules").exists()


def test_npm_install_skipped_when_lockfile_unchanged(fake_shell, tmp_path):
    lock = tmp_path / "package-lock.json"
    lock.write_text("{}")
    installed = tmp_path / "node_modules" / ".package-lock.json"
    installed.parent.mkdir()
    installed.write_text("{}")
    os.utime(lock, (1_000_000, 1_000_000))
    os.utime(installed, (2_000_000, 2_000_000))

    assert install_dependencies(tmp_path) is False
    assert fake_shell.ran("npm", "ci") == []


def test_npm_install_runs_when_lockfile_changed(fake_shell, tmp_path):
    lock = tmp_path / "package-lock.json"
    lock.write_text('{"new": true}')
    installed = tmp_path / "node_modules" / ".package-lock.json"
    installed.parent.mkdir()
    installed.write_text("{}")
    os.utime(installed, (1_000_000, 1_000_000))
    os.utime(lock, (2_000_000, 2_000_000))

    assert install_dependencies(tmp_path, legacy_peer_deps=False) is True
    assert fake_shell.calls[-1] == ["npm", "ci"]
    assert installed.read_text() == '{"new": true}'


def test_pnpm_skips_when_node_modules_exists(fake_shell, tmp_path):
    (tmp_path / "pnpm-lock.yaml").write_text("")
    (tmp_path / "node_modules").mkdir()
    assert install_dependencies(tmp_path) is False


def test_force_reinstall_removes_node_modules(fake_shell, tmp_path):
    (tmp_path / "pnpm-lock.yaml").write_text("")
    (tmp_path / "node_modules" / "left-pad").mkdir(parents=True)

    assert install_dependencies(tmp_path, force=True) is True
    assert not (tmp_path / "node_modules").exists()
    assert fake_shell.calls[-1] == ["npx", "--yes", "pnpm@latest", "install", "--frozen-lockfile"]


def test_ci_npmrc_is_used(fake_shell, tmp_path):
    (tmp_path / "config" / "tools").mkdir(parents=True)
    (tmp_path / "config" / "tools" / ".npmrc.ci").write_text("registry=https://registry.npmjs.org/\n")
    (tmp_path / ".npmrc").write_text("registry=http://localhost:4873\n")

    install_dependencies(tmp_path)
    assert (tmp_path / ".npmrc").read_text() == "registry=https://registry.npmjs.org/\n"


def test_local_npmrc_removed_without_ci_config(fake_shell, tmp_path):
    (tmp_path / ".npmrc").write_text("registry=http://localhost:4873\n")
    install_dependencies(tmp_path)
    assert not (tmp_path / ".npmrc").exists()


def test_verdaccio_urls_rewritten_in_lockfile(fake_shell, tmp_path):
    (tmp_path / "package-lock.json").write_text(
        '{"resolved": "http://localhost:4873/react/-/react-18.2.0.tgz"}'
    )
    install_dependencies(tmp_path)
    assert (tmp_path / "package-lock.json").read_text() == (
        '{"resolved": "https://registry.npmjs.org/react/-/react-18.2.0.tgz"}'
    )


def test_install_failure_raises_stage_error(fake_shell, tmp_path):
    fake_shell.fail(["npm", "ci"])
    with pytest.raises(StageError, match="Dependency install failed"):
        install_dependencies(tmp_path)


# ---------------------------------------------------------------------------
# run_lint_checks
# ---------------------------------------------------------------------------

def test_lint_success_reports_statuses(fake_shell, reporter, tmp_path):
    run_lint_checks(reporter, workdir=tmp_path)
    assert fake_shell.calls == [
        ["sh", "-c", "npm run lint"],
        ["sh", "-c", "npm run type-check"],
    ]
    assert reporter.statuses == [
        ("pending", "jenkins/lint", "Linting in progress"),
        ("success", "jenkins/lint", "Lint passed"),
    ]


def test_lint_uses_pnpm_when_lockfile_present(fake_shell, reporter, tmp_path):
    (tmp_path / "pnpm-lock.yaml").write_text("")
    run_lint_checks(reporter, workdir=tmp_path, skip_type_check=True)
    assert fake_shell.calls == [["sh", "-c", "pnpm run lint"]]


def test_lint_failure_reports_and_raises(fake_shell, reporter, tmp_path):
    fake_shell.fail(["sh", "-c", "npm run lint"])
    with pytest.raises(StageError, match="Lint failed"):
        run_lint_checks(reporter, workdir=tmp_path)
    assert reporter.states == ["pending", "failure"]
    assert fake_shell.ran("sh", "-c", "npm run type-check") == []


def test_type_check_failure_fails_stage(fake_shell, reporter, tmp_path):
    fake_shell.fail(["sh", "-c", "npm run type-check"], returncode=2)
    with pytest.raises(StageError):
        run_lint_checks(reporter, workdir=tmp_path)
    assert reporter.states == ["pending", "failure"]


def test_type_check_failure_can_be_ignored(fake_shell, reporter, tmp_path):
    fake_shell.fail(["sh", "-c", "npm run type-check"], returncode=2)
    run_lint_checks(reporter, workdir=tmp_path, type_check_ignore_errors=True)
    assert reporter.states == ["pending", "success"]


def test_custom_lint_commands(fake_shell, reporter, tmp_path):
    run_lint_checks(reporter, workdir=tmp_path, lint_command="make lint", skip_type_check=True)
    assert fake_shell.calls == [["sh", "-c", "make lint"]]


# ---------------------------------------------------------------------------
# run_unit_tests / build_packages / run_build
# ---------------------------------------------------------------------------

def test_unit_tests_run_with_coverage(fake_shell, reporter, tmp_path):
    run_unit_tests(reporter, workdir=tmp_path)
    assert fake_shell.calls == [["sh", "-c", "npm run test:unit -- --coverage"]]
    assert fake_shell.kwargs[0]["cwd"] == str(tmp_path)
    assert reporter.statuses == [
        ("pending", "jenkins/unit-tests", "Unit tests running"),
        ("success", "jenkins/unit-tests", "All tests passed"),
    ]


def test_unit_tests_use_detected_package_manager(fake_shell, reporter, tmp_path):
    (tmp_path / "pnpm-lock.yaml").write_text("")
    run_unit_tests(reporter, workdir=tmp_path)
    assert fake_shell.calls == [["sh", "-c", "npx pnpm run test:unit -- --coverage"]]


def test_unit_test_failure_reports_and_raises(fake_shell, reporter, tmp_path):
    fake_shell.fail(["sh", "-c"])
    with pytest.raises(StageError, match="Unit tests failed"):
        run_unit_tests(reporter, workdir=tmp_path)
    assert reporter.statuses[-1] == ("failure", "jenkins/unit-tests", "Unit tests failed")


def test_build_packages_filters_workspace(fake_shell, tmp_path):
    build_packages(tmp_path)
    assert fake_shell.calls == [["sh", "-c", 'npm --workspace "./packages/*" -r run build']]


def test_build_packages_with_pnpm(fake_shell, tmp_path):
    (tmp_path / "pnpm-lock.yaml").write_text("")
    build_packages(tmp_path, packages="./libs/*")
    assert fake_shell.calls == [["sh", "-c", 'npx pnpm --filter "./libs/*" -r run build']]


def test_build_packages_failure_raises(fake_shell, tmp_path):
    fake_shell.fail(["sh", "-c"])
    with pytest.raises(StageError, match="Package build failed"):
        build_packages(tmp_path)


def test_run_build_uses_build_script(fake_shell, tmp_path):
    (tmp_path / "yarn.lock").write_text("")
    run_build(tmp_path)
    assert fake_shell.calls == [["sh", "-c", "yarn build"]]


def test_run_build_failure_raises(fake_shell, tmp_path):
    fake_shell.fail(["sh", "-c"], returncode=2)
    with pytest.raises(StageError, match="Build failed"):
        run_build(tmp_path, build_command="make dist")
    assert fake_shell.calls == [["sh", "-c", "make dist"]]


# ---------------------------------------------------------------------------
# run_integration_tests
# ---------------------------------------------------------------------------

@pytest.fixture
def docker_calls(monkeypatch) -> list[tuple]:
    calls: list[tuple] = []
    monkeypatch.setattr(docker, "clean_containers_by_pattern", lambda prefix: calls.append(("pattern", prefix)))
    monkeypatch.setattr(
        docker, "cleanup",
        lambda compose_file, ports, **kw: calls.append(("cleanup", compose_file, kw["clean_lockfiles"])),
    )
    return calls


def test_isolated_integration_run(fake_shell, reporter, docker_calls, tmp_path):
    (tmp_path / "allure-results").mkdir()

    run_integration_tests(reporter, workdir=tmp_path, project_name="int-test-build-9")

    assert docker_calls == [("pattern", "int-test-build-9-"), ("pattern", "int-test-build-9-")]
    assert fake_shell.calls == [["sh", "-c", "npm run test:integration"]]
    assert fake_shell.kwargs[0]["env"] == {"COMPOSE_PROJECT_NAME": "int-test-build-9"}
    assert reporter.states == ["pending", "success"]
    assert not (tmp_path / "allure-results").exists()


def test_shared_integration_run_cleans_stack(fake_shell, reporter, docker_calls, tmp_path):
    run_integration_tests(reporter, workdir=tmp_path, compose_file="test.yml")
    assert docker_calls == [("cleanup", "test.yml", True), ("cleanup", "test.yml", False)]
    assert fake_shell.kwargs[0]["env"] is None


def test_integration_failure_still_cleans_up(fake_shell, reporter, docker_calls, tmp_path):
    fake_shell.fail(["sh", "-c"])
    with pytest.raises(StageError, match="Integration tests failed"):
        run_integration_tests(reporter, workdir=tmp_path, project_name="int-test-build-9")
    assert reporter.states == ["pending", "failure"]
    assert len(docker_calls) == 2


# ---------------------------------------------------------------------------
# run_accessibility_tests
# ---------------------------------------------------------------------------

A11Y_FAILURE = """\
Found 2 accessibility violations:
[1] COLOR_CONTRAST   Impact: serious
[2] LABEL   Impact: critical
"""


def test_accessibility_pass(fake_shell, reporter, tmp_path):
    fake_shell.ok(["npx", "playwright"], "12 passed\n")

    report = run_accessibility_tests(reporter, workdir=tmp_path)

    assert report == {"exit_code": 0, "violation_count": 0}
    assert fake_shell.calls[0] == [
        "npx", "playwright", "test", "tests/e2e/accessibility/",
        "--reporter=list,html", "--output=a11y-results",
    ]
    assert reporter.statuses[-1] == ("success", "jenkins/accessibility", "All accessibility checks passed")
    assert (tmp_path / "a11y-test-output.log").read_text() == "12 passed\n"


def test_accessibility_violations_fail_stage(fake_shell, reporter, tmp_path):
    fake_shell.respond(["npx", "playwright"], (1, A11Y_FAILURE))

    with pytest.raises(StageError, match="failed with 2 violation"):
        run_accessibility_tests(reporter, workdir=tmp_path)

    assert reporter.statuses[-1] == ("failure", "jenkins/accessibility", "Found 2 accessibility violation(s)")
    assert "COLOR_CONTRAST" in (tmp_path / "a11y-test-output.log").read_text()


def test_accessibility_violations_as_warnings(fake_shell, reporter, tmp_path):
    fake_shell.respond(["npx", "playwright"], (1, A11Y_FAILURE))

    report = run_accessibility_tests(reporter, workdir=tmp_path, fail_on_violations=False)

    assert report == {"exit_code": 1, "violation_count": 2}
    assert reporter.statuses[-1] == ("success", "jenkins/accessibility", "Passed (2 warnings)")


def test_accessibility_missing_workdir_fails_stage(fake_shell, reporter, tmp_path):
    with pytest.raises(StageError, match="Accessibility tests failed"):
        run_accessibility_tests(reporter, workdir=tmp_path / "frontend")

    assert reporter.states == ["pending", "failure"]
    state, context, description = reporter.statuses[-1]
    assert description.startswith("Accessibility tests failed: ")
    assert len(description) <= len("Accessibility tests failed: ") + 50


# ---------------------------------------------------------------------------
# scan_container_image
# ---------------------------------------------------------------------------

def test_scan_passes(fake_shell):
    assert scan_container_image("app:42") == "passed"
    assert fake_shell.calls[0] == [
        *stages.TRIVY_DOCKER, "image",
        "--severity", "HIGH,CRITICAL",
        "--exit-code", "1",
        "--format", "json",
        "--output", "trivy-report.json",
        "app:42",
    ]


def test_scan_with_local_trivy(fake_shell):
    scan_container_image("app:42", use_docker=False, fail_on_vulnerability=False)
    assert fake_shell.calls[0][:2] == ["trivy", "image"]
    assert "0" in fake_shell.calls[0]


def test_scan_vulnerabilities_fail(fake_shell):
    fake_shell.fail(["docker", "run"])
    with pytest.raises(StageError, match="vulnerabilities detected in app:42"):
        scan_container_image("app:42")


def test_scan_vulnerabilities_unstable(fake_shell):
    fake_shell.fail(["docker", "run"])
    assert scan_container_image("app:42", fail_on_vulnerability=False) == "unstable"


def test_scan_requires_image(fake_shell):
    with pytest.raises(StageError, match="image is required"):
        scan_container_image("")
    assert fake_shell.calls == []


# ---------------------------------------------------------------------------
# generate_sbom
# ---------------------------------------------------------------------------

def test_sbom_omits_dev_dependencies_by_default(fake_shell):
    assert generate_sbom() is True
    assert fake_shell.calls[0] == [
        "npx", "--yes", "@cyclonedx/cyclonedx-npm",
        "--omit", "dev",
        "--output-format", "json",
        "--output-file", "sbom.json",
    ]


def test_sbom_with_dev_dependencies(fake_shell):
    generate_sbom(output_format="xml", include_dev_deps=True)
    assert "--omit" not in fake_shell.calls[0]
    assert fake_shell.calls[0][-1] == "sbom.xml"


def test_sbom_failure_never_raises(fake_shell):
    fake_shell.fail(["npx"])
    assert generate_sbom() is False
