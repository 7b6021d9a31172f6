"""Pipeline stage runners.

Functions:
    install_dependencies(workdir, ...)
    run_lint_checks(reporter, ...)
    run_unit_tests(reporter, ...)
    build_packages(workdir, ...) / run_build(workdir, ...)
    run_integration_tests(reporter, ...)
    run_accessibility_tests(reporter, ...)   -> dict
    scan_container_image(image, ...)         -> "passed" | "unstable"
    generate_sbom(...)                       -> bool

Stages that gate the build report pending / success / failure through a
StatusReporter and raise StageError when they fail.
"""

import logging
import shutil
from pathlib import Path

from ci_pipeline import docker, shell
from ci_pipeline.environment import SERVICE_PORTS, detect_package_manager
from ci_pipeline.reports.accessibility import parse_violation_count
from ci_pipeline.shell import CommandError
from ci_pipeline.status import StatusReporter

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "https://registry.npmjs.org/"
VERDACCIO_URL = "http://localhost:4873"
NPMRC_CANDIDATES = ("config/tools/.npmrc.ci", ".npmrc.ci")
TRIVY_DOCKER = [
    "docker", "run", "--rm",
    "-v", "/var/run/docker.sock:/var/run/docker.sock",
    "aquasec/trivy:latest",
]


class StageError(Exception):
    """Raised when a stage fails and the build must stop."""


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------

def install_dependencies(
    workdir: str | Path = ".",
    *,
    force: bool = False,
    legacy_peer_deps: bool = True,
    use_npmrc: bool = True,
    registry: str = DEFAULT_REGISTRY,
) -> bool:
    """Install node dependencies, skipping the install when node_modules is current.

    Returns True when an install ran.

    Raises:
        StageError: if the package manager fails.
    """
    root = Path(workdir)
    if use_npmrc:
        _configure_npm(root, registry)

    pnpm = detect_package_manager(str(root)).name == "pnpm"
    node_modules = root / "node_modules"
    lockfile = root / "package-lock.json"
    installed_lock = node_modules / ".package-lock.json"

    if force:
        logger.info("Force installing dependencies...")
        shutil.rmtree(node_modules, ignore_errors=True)
    elif pnpm and node_modules.is_dir():
        logger.info("node_modules exists, assuming dependencies up to date")
        return False
    elif not pnpm and node_modules.is_dir() and not _newer(lockfile, installed_lock):
        logger.info("Dependencies up to date, skipping install")
        return False

    if pnpm:
        logger.info("Installing dependencies with pnpm...")
        command = ["npx", "--yes", "pnpm@latest", "install", "--frozen-lockfile"]
    else:
        logger.info("Installing dependencies with npm...")
        command = ["npm", "ci"] + (["--legacy-peer-deps"] if legacy_peer_deps else [])

    try:
        shell.run(command, check=True, capture=False, cwd=str(root))
    except CommandError as exc:
        raise StageError(f"Dependency install failed: {exc}") from exc

    if not pnpm and lockfile.exists() and node_modules.is_dir():
        installed_lock.write_bytes(lockfile.read_bytes())
    return True


def _configure_npm(root: Path, registry: str) -> None:
    for candidate in NPMRC_CANDIDATES:
        source = root / candidate
        if source.exists():
            logger.info("Using CI npm configuration from %s", candidate)
            (root / ".npmrc").write_bytes(source.read_bytes())
            break
    else:
        # a developer .npmrc may point at a local Verdaccio registry
        (root / ".npmrc").unlink(missing_ok=True)

    shell.run(["npm", "config", "set", "registry", registry], cwd=str(root))

    # npm ci installs from the resolved URLs in the lock file, not the registry setting
    lockfile = root / "package-lock.json"
    if lockfile.exists():
        text = lockfile.read_text(encoding="utf-8")
        if VERDACCIO_URL in text:
            logger.info("Fixing Verdaccio URLs in package-lock.json...")
            lockfile.write_text(
                text.replace(VERDACCIO_URL, DEFAULT_REGISTRY.rstrip("/")), encoding="utf-8"
            )


def _newer(path: Path, than: Path) -> bool:
    if not path.exists():
        return False
    if not than.exists():
        return True
    return path.stat().st_mtime > than.stat().st_mtime


# ---------------------------------------------------------------------------
# Lint
# ---------------------------------------------------------------------------

def run_lint_checks(
    reporter: StatusReporter,
    *,
    workdir: str | Path = ".",
    lint_command: str | None = None,
    type_check_command: str | None = None,
    skip_lint: bool = False,
    skip_type_check: bool = False,
    type_check_ignore_errors: bool = False,
    context: str = "jenkins/lint",
) -> None:
    pm = "pnpm" if (Path(workdir) / "pnpm-lock.yaml").exists() else "npm"
    lint_command = lint_command or f"{pm} run lint"
    type_check_command = type_check_command or f"{pm} run type-check"

    reporter.pending(context, "Linting in progress")
    try:
        if not skip_lint:
            shell.run_shell(lint_command, check=True, capture=False, cwd=str(workdir))
        if not skip_type_check:
            result = shell.run_shell(type_check_command, capture=False, cwd=str(workdir))
            if not result.ok:
                if not type_check_ignore_errors:
                    raise CommandError(result)
                logger.warning("Type check failed (ignored): exit code %d", result.returncode)
    except CommandError as exc:
        reporter.failure(context, "Lint failed")
        raise StageError(f"Lint failed: {exc}") from exc

    reporter.success(context, "Lint passed")


# ---------------------------------------------------------------------------
# Unit tests and builds
# ---------------------------------------------------------------------------

def run_unit_tests(
    reporter: StatusReporter,
    *,
    workdir: str | Path = ".",
    test_command: str | None = None,
    context: str = "jenkins/unit-tests",
) -> None:
    """Run the ``test:unit`` script with coverage (or *test_command*)."""
    pm = detect_package_manager(str(workdir))
    test_command = test_command or f"{pm.run_command('test:unit')} -- --coverage"

    reporter.pending(context, "Unit tests running")
    try:
        shell.run_shell(test_command, check=True, capture=False, cwd=str(workdir))
    except CommandError as exc:
        reporter.failure(context, "Unit tests failed")
        raise StageError(f"Unit tests failed: {exc}") from exc
    reporter.success(context, "All tests passed")


def build_packages(
    workdir: str | Path = ".",
    *,
    packages: str = "./packages/*",
    build_command: str | None = None,
) -> None:
    """Build the shared workspace packages the apps depend on."""
    pm = detect_package_manager(str(workdir))
    build_command = build_command or f'{pm.filter} "{packages}" -r run build'

    logger.info("Building packages matching %s...", packages)
    try:
        shell.run_shell(build_command, check=True, capture=False, cwd=str(workdir))
    except CommandError as exc:
        raise StageError(f"Package build failed: {exc}") from exc


def run_build(workdir: str | Path = ".", *, build_command: str | None = None) -> None:
    pm = detect_package_manager(str(workdir))
    build_command = build_command or pm.run_command("build")

    logger.info("Running production build...")
    try:
        shell.run_shell(build_command, check=True, capture=False, cwd=str(workdir))
    except CommandError as exc:
        raise StageError(f"Build failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Integration tests
# ---------------------------------------------------------------------------

def run_integration_tests(
    reporter: StatusReporter,
    *,
    workdir: str | Path = ".",
    test_command: str = "npm run test:integration",
    project_name: str = "",
    compose_file: str = "deployment/docker/docker-compose.test.yml",
    ports=SERVICE_PORTS,
    context: str = "jenkins/integration",
) -> None:
    """Run integration tests against a Docker Compose stack.

    With *project_name* the stack is isolated per build (COMPOSE_PROJECT_NAME)
    and only that build's containers are cleaned; without it the shared stack
    and service ports are cleaned before and after.
    """
    if project_name:
        logger.info("Using build-specific isolation: %s", project_name)
        docker.clean_containers_by_pattern(f"{project_name}-")
    else:
        docker.cleanup(compose_file, ports, clean_lockfiles=True, workdir=workdir)

    shutil.rmtree(Path(workdir) / "allure-results", ignore_errors=True)
    reporter.pending(context, "Integration tests running")

    env = {"COMPOSE_PROJECT_NAME": project_name} if project_name else None
    try:
        shell.run_shell(test_command, check=True, capture=False, env=env, cwd=str(workdir))
    except CommandError as exc:
        reporter.failure(context, "Integration tests failed")
        raise StageError(f"Integration tests failed: {exc}") from exc
    else:
        reporter.success(context, "Integration tests passed")
    finally:
        if project_name:
            docker.clean_containers_by_pattern(f"{project_name}-")
        else:
            docker.cleanup(compose_file, ports, clean_lockfiles=False, workdir=workdir)


# ---------------------------------------------------------------------------
# Accessibility
# ---------------------------------------------------------------------------

def run_accessibility_tests(
    reporter: StatusReporter,
    *,
    workdir: str | Path = "frontend",
    test_path: str = "tests/e2e/accessibility/",
    log_file: str = "a11y-test-output.log",
    fail_on_violations: bool = True,
    context: str = "jenkins/accessibility",
) -> dict:
    """Run the axe-core Playwright suite (WCAG 2.2 AA) and count violations.

    The combined output is kept in *log_file* under *workdir*.

    Raises:
        StageError: if the suite fails and *fail_on_violations* is set.
    """
    logger.info("=== Running Accessibility Tests ===")
    logger.info("WCAG Level: 2.2 AA")
    logger.info("Test Path: %s", test_path)
    logger.info("Fail on Violations: %s", fail_on_violations)

    reporter.pending(context, "Running WCAG 2.2 AA accessibility tests...")
    try:
        result = shell.run(
            ["npx", "playwright", "test", test_path, "--reporter=list,html", "--output=a11y-results"],
            cwd=str(workdir),
        )
        output = result.stdout + result.stderr
        (Path(workdir) / log_file).write_text(output, encoding="utf-8")
    except OSError as exc:
        reporter.failure(context, f"Accessibility tests failed: {str(exc)[:50]}")
        raise StageError(f"Accessibility tests failed: {exc}") from exc

    if output.strip():
        logger.info("%s", output.rstrip())

    violations = parse_violation_count(output)

    if not result.ok and fail_on_violations:
        reporter.failure(context, f"Found {violations} accessibility violation(s)")
        raise StageError(f"Accessibility tests failed with {violations} violation(s)")

    if violations > 0 and not fail_on_violations:
        reporter.success(context, f"Passed ({violations} warnings)")
        logger.warning("%d accessibility violation(s) found but not blocking", violations)
    else:
        reporter.success(context, "All accessibility checks passed")

    logger.info("=== Accessibility Tests Complete ===")
    return {"exit_code": result.returncode, "violation_count": violations}


# ---------------------------------------------------------------------------
# Supply chain
# ---------------------------------------------------------------------------

def scan_container_image(
    image: str,
    *,
    severity: str = "HIGH,CRITICAL",
    fail_on_vulnerability: bool = True,
    output_file: str = "trivy-report.json",
    use_docker: bool = True,
) -> str:
    """Scan *image* with Trivy, writing a JSON report to *output_file*.

    Returns ``"passed"`` or, when vulnerabilities are found but not blocking,
    ``"unstable"``.

    Raises:
        StageError: if vulnerabilities are found and *fail_on_vulnerability* is set.
    """
    if not image:
        raise StageError("scan_container_image: image is required")

    logger.info("Scanning container image: %s", image)
    logger.info("Severity filter: %s", severity)

    trivy = TRIVY_DOCKER if use_docker else ["trivy"]
    result = shell.run(
        [
            *trivy, "image",
            "--severity", severity,
            "--exit-code", "1" if fail_on_vulnerability else "0",
            "--format", "json",
            "--output", output_file,
            image,
        ],
        capture=False,
    )

    if result.ok:
        logger.info("Container scan passed: No %s vulnerabilities found", severity)
        return "passed"
    if fail_on_vulnerability:
        raise StageError(f"Container scan failed: {severity} vulnerabilities detected in {image}")
    logger.warning("Container scan warning: Vulnerabilities found in %s", image)
    return "unstable"


def generate_sbom(
    *,
    output_format: str = "json",
    output_file: str | None = None,
    package_path: str | Path = ".",
    include_dev_deps: bool = False,
) -> bool:
    """Generate a CycloneDX SBOM from npm dependencies.

    SBOM problems never fail the build; returns False after logging a warning.
    """
    output_file = output_file or f"sbom.{output_format}"
    logger.info("Generating SBOM in %s format...", output_format)

    command = ["npx", "--yes", "@cyclonedx/cyclonedx-npm"]
    if not include_dev_deps:
        command += ["--omit", "dev"]
    command += ["--output-format", output_format, "--output-file", output_file]

    result = shell.run(command, cwd=str(package_path))
    if not result.ok:
        logger.warning("SBOM generation failed: %s", (result.stderr or result.stdout).strip())
        return False

    logger.info("SBOM generated successfully: %s", Path(package_path) / output_file)
    return True
