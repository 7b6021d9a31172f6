"""Configuration loading and validation.

Usage:
    config = load()                          # ci-pipeline.yaml if present, else defaults
    config = load("ci/pipeline.yaml")        # raises ConfigError if missing or invalid
    generate_template("ci-pipeline.yaml")    # writes example file to disk
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ci_pipeline.environment import E2E_PORTS, SERVICE_PORTS

DEFAULT_CONFIG_PATH = "ci-pipeline.yaml"
DEFAULT_API_URL = "https://api.github.com"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(Exception):
    """Raised when the configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class GitHubSettings:
    owner: str = ""
    repo: str = ""
    token: str = ""
    api_url: str = DEFAULT_API_URL


@dataclass
class DockerSettings:
    compose_file: str = "deployment/docker/docker-compose.test.yml"
    e2e_compose_file: str = "docker-compose.e2e.yml"
    service_ports: list[int] = field(default_factory=lambda: list(SERVICE_PORTS))
    e2e_ports: list[int] = field(default_factory=lambda: list(E2E_PORTS))


@dataclass
class FlakySettings:
    quarantine_file: str = ".flaky-tests.json"
    results_dir: str = "coverage"
    retry_dir: str = ""
    threshold: int = 3
    history_limit: int = 10
    create_issues_on: list[str] = field(default_factory=lambda: ["main"])

    @property
    def resolved_retry_dir(self) -> str:
        """Retry results live under ``<results_dir>/retry`` unless configured."""
        return self.retry_dir or f"{self.results_dir}/retry"


@dataclass
class Config:
    github: GitHubSettings = field(default_factory=GitHubSettings)
    docker: DockerSettings = field(default_factory=DockerSettings)
    flaky: FlakySettings = field(default_factory=FlakySettings)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load(config_path: str | None = None) -> Config:
    """Load and validate configuration from a YAML file.

    With no *config_path*, ``ci-pipeline.yaml`` is read when it exists and
    built-in defaults are used otherwise. Environment variables GITHUB_TOKEN,
    GITHUB_OWNER and GITHUB_REPO override file values.

    Raises:
        ConfigError: if an explicitly named file is missing, or the file is
                     malformed or contains invalid values.
    """
    raw: dict = {}

    if config_path is None:
        path = Path(DEFAULT_CONFIG_PATH)
        if path.exists():
            raw = _read_yaml(path)
    else:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(
                f"Config file not found: '{config_path}'\n"
                "Run `ci-pipeline init` to generate a template."
            )
        raw = _read_yaml(path)

    github, docker, flaky = _sections(raw, "github", "docker", "flaky")
    defaults_docker = DockerSettings()
    defaults_flaky = FlakySettings()

    config = Config(
        github=GitHubSettings(
            owner=_env_or("GITHUB_OWNER", github.get("owner", "")),
            repo=_env_or("GITHUB_REPO", github.get("repo", "")),
            token=_env_or("GITHUB_TOKEN", github.get("token", "")),
            api_url=str(github.get("api_url") or DEFAULT_API_URL).strip(),
        ),
        docker=DockerSettings(
            compose_file=docker.get("compose_file") or defaults_docker.compose_file,
            e2e_compose_file=docker.get("e2e_compose_file") or defaults_docker.e2e_compose_file,
            service_ports=docker.get("service_ports") or defaults_docker.service_ports,
            e2e_ports=docker.get("e2e_ports") or defaults_docker.e2e_ports,
        ),
        flaky=FlakySettings(
            quarantine_file=flaky.get("quarantine_file") or defaults_flaky.quarantine_file,
            results_dir=flaky.get("results_dir") or defaults_flaky.results_dir,
            retry_dir=flaky.get("retry_dir") or "",
            threshold=flaky.get("threshold", defaults_flaky.threshold),
            history_limit=flaky.get("history_limit", defaults_flaky.history_limit),
            create_issues_on=flaky.get("create_issues_on", defaults_flaky.create_issues_on),
        ),
    )
    _validate(config)
    return config


def _read_yaml(path: Path) -> dict:
    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse '{path}': {exc}") from exc

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"'{path}' must be a YAML mapping at the top level.")
    return raw


def _sections(raw: dict, *names: str) -> list[dict]:
    """Return each top-level section, raising ConfigError for any that is not a mapping."""
    sections = [raw.get(name) or {} for name in names]
    errors = [
        f"  - '{name}' must be a mapping"
        for name, section in zip(names, sections)
        if not isinstance(section, dict)
    ]
    if errors:
        raise ConfigError("Invalid configuration:\n" + "\n".join(errors))
    return sections


def _env_or(name: str, fallback) -> str:
    return str(os.environ.get(name) or fallback or "").strip()


def _validate(config: Config) -> None:
    """Raise ConfigError listing every invalid field."""
    errors: list[str] = []

    for key in ("service_ports", "e2e_ports"):
        ports = getattr(config.docker, key)
        if not isinstance(ports, list) or not all(_is_port(p) for p in ports):
            errors.append(f"  - 'docker.{key}' must be a list of ports (1-65535)")

    for key in ("threshold", "history_limit"):
        value = getattr(config.flaky, key)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            errors.append(f"  - 'flaky.{key}' must be a positive integer")

    if not isinstance(config.flaky.create_issues_on, list):
        errors.append("  - 'flaky.create_issues_on' must be a list of branch names")

    if errors:
        raise ConfigError("Invalid configuration:\n" + "\n".join(errors))


def _is_port(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value < 65536

# ---------------------------------------------------------------------------
# Template generator (used by `init` command)
# ---------------------------------------------------------------------------

TEMPLATE = """\
github:
  owner: "{owner}"
  repo: "{repo}"{repo_padding}# Falls back to the git remote, then the job name
  token: ""                      # Prefer the GITHUB_TOKEN environment variable

docker:
  compose_file: "deployment/docker/docker-compose.test.yml"
  e2e_compose_file: "docker-compose.e2e.yml"
  e2e_ports: [3001, 3002, 3003, 3004, 3005, 3006, 3007, 5000, 9080]

flaky:
  quarantine_file: ".flaky-tests.json"
  results_dir: "coverage"        # Retry results are read from <results_dir>/retry
  threshold: 3                   # Occurrences before a test is quarantined
  history_limit: 10
  create_issues_on: ["main"]
"""


def generate_template(
    output_path: str = DEFAULT_CONFIG_PATH,
    *,
    owner: str = "your-org",
    repo: str = "your-repo",
    force: bool = False,
) -> None:
    """Write a template ci-pipeline.yaml to *output_path*.

    ``init`` passes the owner and repository parsed from the git remote so the
    generated file is usable as-is on a checked-out repository.

    Raises:
        ConfigError: if the file already exists and *force* is not set.
    """
    path = Path(output_path)
    if path.exists() and not force:
        raise ConfigError(
            f"'{output_path}' already exists. Use --force or choose a different path."
        )
    path.write_text(
        TEMPLATE.format(owner=owner, repo=repo, repo_padding=" " * max(1, 23 - len(repo))),
        encoding="utf-8",
    )
