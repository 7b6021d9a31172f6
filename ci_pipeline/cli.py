"""CLI entry point — command definitions using Click.

Commands:
    init                    Generate a template config file
    env                     Build context (project names, full CI, package manager)
    status                  Post a GitHub commit status
    install / lint / unit / build-packages / build / integration / a11y / scan-image / sbom
                            Pipeline stages
    flaky analyze           Detect flaky tests and update the quarantine file
    flaky excludes          vitest --exclude arguments for quarantined tests
    flaky patterns          Name patterns of quarantined tests
    docker compose          docker compose with V1 fallback
    docker cleanup          Compose down, free ports, remove lockfiles
    docker e2e-cleanup      Aggressive E2E container / port cleanup
    docker verify-ports     Fail unless the E2E ports can be freed
    docker stale-networks   Remove leftover e2e / test networks
"""

import functools
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from ci_pipeline import __version__

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers shared by all commands
# ---------------------------------------------------------------------------

def _load_config(ctx: click.Context):
    """Load config once per invocation. Exits on error."""
    from ci_pipeline.config import ConfigError, load

    obj = ctx.obj
    if "config" not in obj:
        try:
            obj["config"] = load(obj["config_path"])
        except ConfigError as exc:
            click.echo(f"Configuration error: {exc}", err=True)
            sys.exit(1)
    return obj["config"]


def _make_client(ctx: click.Context):
    """Return a GitHubClient, or None when no token is configured."""
    from ci_pipeline.client import GitHubClient

    config = _load_config(ctx)
    if not config.github.token:
        if ctx.obj["verbose"]:
            click.echo("[verbose] No GitHub token configured; GitHub calls disabled", err=True)
        return None
    return GitHubClient(token=config.github.token, api_url=config.github.api_url)


def _build_env():
    from ci_pipeline.environment import BuildEnvironment
    return BuildEnvironment.from_env()


def _make_reporter(ctx: click.Context):
    from ci_pipeline.environment import resolve_repository
    from ci_pipeline.status import StatusReporter

    config = _load_config(ctx)
    build = _build_env()
    repo = resolve_repository(config.github.repo, build)
    return StatusReporter(
        _make_client(ctx),
        owner=config.github.owner,
        repo=repo,
        sha=build.git_commit,
        target_url=build.build_url or None,
    )


def _emit_json(data: Any, ctx: click.Context) -> None:
    """Write JSON to stdout or to the --output file.

    Build steps archive their reports from directories that may not exist yet
    (``reports/flaky.json``), so missing parents are created.
    """
    obj = ctx.obj
    text = json.dumps(data, indent=2 if obj["pretty"] else None, ensure_ascii=False)

    output_path: str | None = obj["output_path"]
    if not output_path:
        click.echo(text)
        return

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text + "\n", encoding="utf-8")
    logger.info("Report written to %s", path)


class _ClickEchoHandler(logging.Handler):
    """Log records go to stderr through click.echo, like every other diagnostic."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:
            self.handleError(record)


def _configure_logging(verbose: bool) -> None:
    package_logger = logging.getLogger("ci_pipeline")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, _ClickEchoHandler) for h in package_logger.handlers):
        handler = _ClickEchoHandler()
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        package_logger.addHandler(handler)


def _handle_errors(func):
    """Decorator that turns library exceptions into a message and exit code 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        from ci_pipeline.client import GitHubClientError
        from ci_pipeline.docker import PortsBusyError
        from ci_pipeline.shell import CommandError
        from ci_pipeline.stages import StageError
        from ci_pipeline.status import InvalidStatusError

        try:
            return func(*args, **kwargs)
        except StageError as exc:
            click.echo(f"Stage failed: {exc}", err=True)
            sys.exit(1)
        except PortsBusyError as exc:
            click.echo(f"Ports busy: {exc}", err=True)
            sys.exit(1)
        except CommandError as exc:
            click.echo(f"Command error: {exc}", err=True)
            sys.exit(exc.result.returncode or 1)
        except InvalidStatusError as exc:
            click.echo(f"Status error: {exc}", err=True)
            sys.exit(1)
        except GitHubClientError as exc:
            click.echo(f"GitHub error: {exc}", err=True)
            sys.exit(1)

    return wrapper


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------

@click.group()
@click.option("--config", "config_path", default=None,
              help="Path to the configuration file [default: ci-pipeline.yaml if present].")
@click.option("--output", "output_path", default=None,
              help="Write JSON output to a file instead of stdout.")
@click.option("--pretty", is_flag=True, default=False,
              help="Pretty-print the JSON output.")
@click.option("--verbose", is_flag=True, default=False,
              help="Enable verbose logging.")
@click.version_option(__version__, prog_name="ci-pipeline")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, output_path: str | None,
        pretty: bool, verbose: bool) -> None:
    """CI pipeline helpers — test stages, Docker environments, flaky-test quarantine."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["output_path"] = output_path
    ctx.obj["pretty"] = pretty
    ctx.obj["verbose"] = verbose

    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------

@cli.command("init")
@click.option("--output", "output_path", default="ci-pipeline.yaml", show_default=True,
              help="Path where the template config file will be written.")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file.")
def init_command(output_path: str, force: bool) -> None:
    """Generate a ci-pipeline.yaml, prefilled from the git remote when possible."""
    from ci_pipeline.config import ConfigError, generate_template
    from ci_pipeline.environment import git_remote_url, owner_repo_from_remote_url

    remote = owner_repo_from_remote_url(git_remote_url())
    owner, repo = remote or ("your-org", "your-repo")
    try:
        generate_template(output_path, owner=owner, repo=repo, force=force)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Template written to '{output_path}' for {owner}/{repo}.")
    click.echo("Export GITHUB_TOKEN (repo:status and issues scopes) to enable status reporting.")


# ---------------------------------------------------------------------------
# env
# ---------------------------------------------------------------------------

@cli.command("env")
@click.option("--check-pr", is_flag=True, default=False,
              help="Ask GitHub whether the branch has an open pull request.")
@click.pass_context
@_handle_errors
def env_command(ctx: click.Context, check_pr: bool) -> None:
    """Describe the current build: project names, CI mode and package manager."""
    from ci_pipeline.environment import (
        default_environment,
        detect_package_manager,
        has_open_pull_request,
        resolve_repository,
    )

    config = _load_config(ctx)
    build = _build_env()
    repo = resolve_repository(config.github.repo, build)

    if check_pr and not build.has_open_pr and build.branch_name:
        client = _make_client(ctx)
        if client is not None:
            build.has_open_pr = has_open_pull_request(
                client, config.github.owner, repo, build.branch_name
            )

    pm = detect_package_manager(".")
    _emit_json({
        "project_name": build.project_name,
        "repository": f"{config.github.owner}/{repo}",
        "branch": build.branch_name,
        "build_number": build.build_number,
        "full_ci": build.is_full_ci(),
        "has_open_pr": build.has_open_pr,
        "e2e_project_name": build.e2e_project_name,
        "integration_project_name": build.integration_project_name,
        "workspace_path": build.workspace_path,
        "package_manager": pm.name,
        "install_command": pm.install,
        "exec_command": pm.exec,
        "filter_command": pm.filter,
        "environment": default_environment(build, config.github.owner),
    }, ctx)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------

@cli.command("status")
@click.argument("state")
@click.argument("context", default="jenkins/ci")
@click.option("--description", default="Jenkins build", show_default=True)
@click.option("--target-url", default=None, help="Link shown on the status (default: BUILD_URL).")
@click.pass_context
@_handle_errors
def status_command(ctx: click.Context, state: str, context: str,
                   description: str, target_url: str | None) -> None:
    """Post STATE (pending, success, failure, error) for CONTEXT on GIT_COMMIT."""
    reporter = _make_reporter(ctx)
    reporter.report(state, context, description, target_url)


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

@cli.command("install")
@click.option("--force", is_flag=True, default=False, help="Remove node_modules and reinstall.")
@click.option("--legacy-peer-deps/--no-legacy-peer-deps", default=True, show_default=True)
@click.option("--registry", default="https://registry.npmjs.org/", show_default=True)
@click.pass_context
@_handle_errors
def install_command(ctx: click.Context, force: bool, legacy_peer_deps: bool, registry: str) -> None:
    """Install node dependencies (skipped when node_modules is current)."""
    from ci_pipeline.stages import install_dependencies
    install_dependencies(".", force=force, legacy_peer_deps=legacy_peer_deps, registry=registry)


@cli.command("lint")
@click.option("--lint-command", default=None, help="Default: '<pm> run lint'.")
@click.option("--type-check-command", default=None, help="Default: '<pm> run type-check'.")
@click.option("--skip-lint", is_flag=True, default=False)
@click.option("--skip-type-check", is_flag=True, default=False)
@click.option("--ignore-type-errors", is_flag=True, default=False)
@click.option("--context", "status_context", default="jenkins/lint", show_default=True)
@click.pass_context
@_handle_errors
def lint_command(ctx: click.Context, lint_command: str | None, type_check_command: str | None,
                 skip_lint: bool, skip_type_check: bool, ignore_type_errors: bool,
                 status_context: str) -> None:
    """Run lint and type checks with GitHub status reporting."""
    from ci_pipeline.stages import run_lint_checks
    run_lint_checks(
        _make_reporter(ctx),
        lint_command=lint_command,
        type_check_command=type_check_command,
        skip_lint=skip_lint,
        skip_type_check=skip_type_check,
        type_check_ignore_errors=ignore_type_errors,
        context=status_context,
    )


@cli.command("unit")
@click.option("--test-command", default=None, help="Default: '<pm> run test:unit -- --coverage'.")
@click.option("--context", "status_context", default="jenkins/unit-tests", show_default=True)
@click.pass_context
@_handle_errors
def unit_command(ctx: click.Context, test_command: str | None, status_context: str) -> None:
    """Run unit tests with GitHub status reporting."""
    from ci_pipeline.stages import run_unit_tests
    run_unit_tests(_make_reporter(ctx), test_command=test_command, context=status_context)


@cli.command("build-packages")
@click.option("--packages", default="./packages/*", show_default=True,
              help="Workspace filter selecting the packages to build.")
@click.option("--build-command", default=None, help="Override the generated build command.")
@_handle_errors
def build_packages_command(packages: str, build_command: str | None) -> None:
    """Build the shared workspace packages."""
    from ci_pipeline.stages import build_packages
    build_packages(".", packages=packages, build_command=build_command)


@cli.command("build")
@click.option("--build-command", default=None, help="Default: '<pm> run build'.")
@_handle_errors
def run_build_command(build_command: str | None) -> None:
    """Run the production build."""
    from ci_pipeline.stages import run_build
    run_build(".", build_command=build_command)


@cli.command("integration")
@click.option("--test-command", default="npm run test:integration", show_default=True)
@click.option("--isolate/--shared", default=True, show_default=True,
              help="Use a build-specific compose project (int-test-build-N).")
@click.option("--context", "status_context", default="jenkins/integration", show_default=True)
@click.pass_context
@_handle_errors
def integration_command(ctx: click.Context, test_command: str, isolate: bool,
                        status_context: str) -> None:
    """Run integration tests against the test compose stack."""
    from ci_pipeline.stages import run_integration_tests

    config = _load_config(ctx)
    build = _build_env()
    run_integration_tests(
        _make_reporter(ctx),
        test_command=test_command,
        project_name=build.integration_project_name if isolate else "",
        compose_file=config.docker.compose_file,
        ports=config.docker.service_ports,
        context=status_context,
    )


@cli.command("a11y")
@click.option("--workdir", default="frontend", show_default=True)
@click.option("--test-path", default="tests/e2e/accessibility/", show_default=True)
@click.option("--fail-on-violations/--warn-on-violations", default=True, show_default=True)
@click.option("--context", "status_context", default="jenkins/accessibility", show_default=True)
@click.pass_context
@_handle_errors
def a11y_command(ctx: click.Context, workdir: str, test_path: str,
                 fail_on_violations: bool, status_context: str) -> None:
    """Run WCAG 2.2 AA accessibility tests and report the violation count."""
    from ci_pipeline.stages import run_accessibility_tests

    report = run_accessibility_tests(
        _make_reporter(ctx),
        workdir=workdir,
        test_path=test_path,
        fail_on_violations=fail_on_violations,
        context=status_context,
    )
    _emit_json(report, ctx)


@cli.command("scan-image")
@click.argument("image")
@click.option("--severity", default="HIGH,CRITICAL", show_default=True)
@click.option("--fail-on-vulnerability/--warn-on-vulnerability", default=True, show_default=True)
@click.option("--report", "report_file", default="trivy-report.json", show_default=True)
@click.option("--local-trivy", is_flag=True, default=False,
              help="Use the trivy binary instead of the aquasec/trivy image.")
@click.pass_context
@_handle_errors
def scan_image_command(ctx: click.Context, image: str, severity: str,
                       fail_on_vulnerability: bool, report_file: str, local_trivy: bool) -> None:
    """Scan IMAGE for vulnerabilities with Trivy."""
    from ci_pipeline.stages import scan_container_image

    outcome = scan_container_image(
        image,
        severity=severity,
        fail_on_vulnerability=fail_on_vulnerability,
        output_file=report_file,
        use_docker=not local_trivy,
    )
    click.echo(outcome)


@cli.command("sbom")
@click.option("--format", "output_format", type=click.Choice(["json", "xml"]),
              default="json", show_default=True)
@click.option("--output-file", default=None, help="Default: sbom.<format>.")
@click.option("--package-path", default=".", show_default=True)
@click.option("--include-dev", is_flag=True, default=False)
def sbom_command(output_format: str, output_file: str | None,
                 package_path: str, include_dev: bool) -> None:
    """Generate a CycloneDX SBOM (never fails the build)."""
    from ci_pipeline.stages import generate_sbom
    generate_sbom(
        output_format=output_format,
        output_file=output_file,
        package_path=package_path,
        include_dev_deps=include_dev,
    )


# ---------------------------------------------------------------------------
# flaky
# ---------------------------------------------------------------------------

@cli.group("flaky")
def flaky_group() -> None:
    """Flaky-test detection and quarantine."""


@flaky_group.command("analyze")
@click.option("--results-dir", default=None, help="First-run results (default from config).")
@click.option("--retry-dir", default=None, help="Retry results (default: <results-dir>/retry).")
@click.option("--quarantine-file", default=None, help="Quarantine JSON (default from config).")
@click.option("--create-issue/--no-create-issue", default=None,
              help="Open a GitHub issue (default: only on the configured branches).")
@click.option("--dry-run", is_flag=True, default=False, help="Do not write the quarantine file.")
@click.pass_context
@_handle_errors
def flaky_analyze_command(ctx: click.Context, results_dir: str | None, retry_dir: str | None,
                          quarantine_file: str | None, create_issue: bool | None,
                          dry_run: bool) -> None:
    """Compare first-run failures with retries and update the quarantine."""
    from ci_pipeline.environment import resolve_repository
    from ci_pipeline.reports.flaky import (
        analyze_results,
        create_flaky_test_issue,
        format_flaky_report,
        load_quarantine,
        save_quarantine,
    )

    config = _load_config(ctx)
    settings = config.flaky
    build = _build_env()
    if results_dir is None:
        results_dir = settings.results_dir
        retry_dir = retry_dir or settings.resolved_retry_dir
    else:
        retry_dir = retry_dir or f"{results_dir}/retry"
    quarantine_file = quarantine_file or settings.quarantine_file

    result = analyze_results(
        results_dir,
        retry_dir,
        load_quarantine(quarantine_file),
        build_number=build.build_number or None,
        threshold=settings.threshold,
        history_limit=settings.history_limit,
    )
    flaky_tests = result["flaky_tests"]
    click.echo(format_flaky_report(flaky_tests), err=True)

    issue_number = None
    if flaky_tests:
        if create_issue is None:
            create_issue = build.branch_name in settings.create_issues_on
        client = _make_client(ctx) if create_issue else None
        if client is not None:
            repo = resolve_repository(config.github.repo, build)
            issue_number = create_flaky_test_issue(
                client, config.github.owner, repo, flaky_tests, build
            )
        if not dry_run:
            save_quarantine(result["quarantine"], quarantine_file)

    quarantined = sorted(
        test_id for test_id, data in result["quarantine"]["tests"].items()
        if data.get("quarantined")
    )
    _emit_json({
        "first_run_failures": result["first_run_failures"],
        "flaky_tests": [t.to_dict() for t in flaky_tests],
        "consistent_failures": [f.to_dict() for f in result["consistent_failures"]],
        "quarantined": quarantined,
        "issue_number": issue_number,
    }, ctx)


@flaky_group.command("excludes")
@click.option("--quarantine-file", default=None, help="Quarantine JSON (default from config).")
@click.pass_context
def flaky_excludes_command(ctx: click.Context, quarantine_file: str | None) -> None:
    """Print vitest --exclude arguments for quarantined test files."""
    from ci_pipeline.reports.flaky import exclude_args, load_quarantine

    path = quarantine_file or _load_config(ctx).flaky.quarantine_file
    click.echo(exclude_args(load_quarantine(path)))


@flaky_group.command("patterns")
@click.option("--quarantine-file", default=None, help="Quarantine JSON (default from config).")
@click.pass_context
def flaky_patterns_command(ctx: click.Context, quarantine_file: str | None) -> None:
    """Print one grep pattern per quarantined test name."""
    from ci_pipeline.reports.flaky import load_quarantine, quarantined_patterns

    path = quarantine_file or _load_config(ctx).flaky.quarantine_file
    for pattern in quarantined_patterns(load_quarantine(path)):
        click.echo(pattern)


# ---------------------------------------------------------------------------
# docker
# ---------------------------------------------------------------------------

@cli.group("docker")
def docker_group() -> None:
    """Docker Compose lifecycle and test-environment cleanup."""


@docker_group.command("compose", context_settings={"ignore_unknown_options": True})
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("-f", "--file", "compose_file", default=None,
              help="Compose file (default: the E2E compose file from config).")
@click.option("-p", "--project", "project_name", default="",
              help="COMPOSE_PROJECT_NAME; use 'e2e' for this build's E2E project.")
@click.option("--safe", is_flag=True, default=False, help="Ignore failures.")
@click.pass_context
@_handle_errors
def docker_compose_command(ctx: click.Context, command: tuple[str, ...], compose_file: str | None,
                           project_name: str, safe: bool) -> None:
    """Run a compose COMMAND with `docker compose`, falling back to `docker-compose`."""
    from ci_pipeline.docker import compose, compose_safe

    config = _load_config(ctx)
    compose_file = compose_file or config.docker.e2e_compose_file
    if project_name == "e2e":
        project_name = _build_env().e2e_project_name

    if safe:
        compose_safe(list(command), compose_file, project_name)
    else:
        compose(list(command), compose_file, project_name)


@docker_group.command("cleanup")
@click.option("-f", "--file", "compose_file", default=None,
              help="Compose file (default from config).")
@click.option("--port", "ports", type=int, multiple=True,
              help="Port to free (repeatable, default: configured service ports).")
@click.option("--pattern", "project_pattern", default="",
              help="Also remove containers/networks/volumes with this name prefix.")
@click.option("--keep-lockfiles", is_flag=True, default=False)
@click.pass_context
@_handle_errors
def docker_cleanup_command(ctx: click.Context, compose_file: str | None, ports: tuple[int, ...],
                           project_pattern: str, keep_lockfiles: bool) -> None:
    """Stop the compose stack, free service ports and remove E2E lockfiles."""
    from ci_pipeline.docker import cleanup

    config = _load_config(ctx)
    cleanup(
        compose_file or config.docker.compose_file,
        list(ports) or config.docker.service_ports,
        clean_lockfiles=not keep_lockfiles,
        project_pattern=project_pattern,
    )


@docker_group.command("e2e-cleanup")
@click.pass_context
@_handle_errors
def docker_e2e_cleanup_command(ctx: click.Context) -> None:
    """Remove every E2E-related container, network and port holder."""
    from ci_pipeline.docker import aggressive_e2e_cleanup

    busy = aggressive_e2e_cleanup(_load_config(ctx).docker.e2e_ports)
    _emit_json({"ports_in_use": busy}, ctx)


@docker_group.command("verify-ports")
@click.option("--retries", default=3, show_default=True, type=click.IntRange(min=1))
@click.option("--delay", default=5, show_default=True, type=click.FloatRange(min=0),
              help="Seconds to wait between attempts.")
@click.pass_context
@_handle_errors
def docker_verify_ports_command(ctx: click.Context, retries: int, delay: float) -> None:
    """Exit non-zero unless the E2E ports are (or can be made) free."""
    from ci_pipeline.docker import verify_e2e_ports_free

    verify_e2e_ports_free(_load_config(ctx).docker.e2e_ports, retries, delay)
    click.echo("All E2E ports are free")


@docker_group.command("stale-networks")
@_handle_errors
def docker_stale_networks_command() -> None:
    """Remove leftover networks with 'e2e' or 'test' in the name."""
    from ci_pipeline.docker import clean_stale_networks
    clean_stale_networks()
