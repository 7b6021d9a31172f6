"""Build context derived from the CI environment.

Usage:
    build = BuildEnvironment.from_env()
    build.e2e_project_name            # "e2e-build-42"
    build.is_full_ci()                # PRs, protected and deploy/* branches
    pm = detect_package_manager(".")  # pnpm / yarn / npm command prefixes
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from ci_pipeline import shell
from ci_pipeline.client import GitHubClient, GitHubClientError

logger = logging.getLogger(__name__)

# Microservices (3001-3015, 3020) and frontend dev servers (5178-5180)
SERVICE_PORTS: tuple[int, ...] = (
    3001, 3002, 3003, 3004, 3005, 3006, 3007, 3008,
    3009, 3010, 3011, 3012, 3013, 3014, 3015, 3020,
    5178, 5179, 5180,
)

# Ports published by the E2E compose stack
E2E_PORTS: tuple[int, ...] = (3001, 3002, 3003, 3004, 3005, 3006, 3007, 5000, 9080)

PROTECTED_BRANCHES = ("main", "master", "develop", "staging")

_AGENT_LABELS = {"unit": "unit", "integration": "integration", "e2e": "e2e"}

# https://github.com/owner/repo.git and git@github.com:owner/repo.git
_REMOTE_RE = re.compile(r"github\.com[/:]([^/]+)/([^/.]+)")
_JOB_SUFFIX_RE = re.compile(r"-(ci|multibranch)$")


# ---------------------------------------------------------------------------
# Build environment
# ---------------------------------------------------------------------------

@dataclass
class BuildEnvironment:
    job_name: str = ""
    branch_name: str = ""
    build_number: str = ""
    build_url: str = ""
    git_commit: str = ""
    change_id: str = ""
    workspace: str = ""
    has_open_pr: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BuildEnvironment":
        env = os.environ if environ is None else environ
        return cls(
            job_name=env.get("JOB_NAME", ""),
            branch_name=env.get("BRANCH_NAME", ""),
            build_number=env.get("BUILD_NUMBER", ""),
            build_url=env.get("BUILD_URL", ""),
            git_commit=env.get("GIT_COMMIT", ""),
            change_id=env.get("CHANGE_ID", ""),
            workspace=env.get("WORKSPACE", ""),
            has_open_pr=env.get("HAS_OPEN_PR", "") == "true",
        )

    @property
    def project_name(self) -> str:
        """First JOB_NAME segment, lower-cased ("MachShop/main" -> "machshop")."""
        first = self.job_name.split("/")[0] if self.job_name else ""
        return first.lower() or "unknown"

    @property
    def workspace_path(self) -> str:
        """Persistent per-project workspace used for warm builds."""
        return f"/home/jenkins/agent/workspace-{self.project_name}"

    @property
    def e2e_project_name(self) -> str:
        return f"e2e-build-{self.build_number or 'local'}"

    @property
    def integration_project_name(self) -> str:
        return f"int-test-build-{self.build_number or 'local'}"

    def is_full_ci(self) -> bool:
        """Whether integration, contract and E2E stages should run."""
        if self.change_id:
            return True
        if self.branch_name in PROTECTED_BRANCHES:
            return True
        if self.branch_name.startswith("deploy/"):
            return True
        return self.has_open_pr


def default_environment(build: BuildEnvironment, owner: str = "") -> dict[str, str]:
    """Environment variables shared by every pipeline stage."""
    return {
        "GITHUB_OWNER": owner,
        "GITHUB_REPO": build.job_name.split("/")[0] if build.job_name else "",
        "CI": "true",
        "NODE_ENV": "test",
        "NPM_CONFIG_CACHE": "/home/jenkins/agent/.npm-cache",
        "PLAYWRIGHT_BROWSERS_PATH": "/home/jenkins/agent/.playwright-cache",
    }


def agent_label(test_type: str) -> str:
    return _AGENT_LABELS.get(test_type, "linux")


# ---------------------------------------------------------------------------
# Package manager detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PackageManager:
    name: str
    install: str
    run: str
    exec: str
    filter: str

    def run_command(self, script: str) -> str:
        """e.g. ``run_command("lint")`` -> ``"npx pnpm run lint"``."""
        return f"{self.run} {script}"


PNPM = PackageManager(
    name="pnpm",
    install="npx --yes pnpm@latest install --frozen-lockfile",
    run="npx pnpm run",
    exec="npx pnpm exec",
    filter="npx pnpm --filter",
)
YARN = PackageManager(
    name="yarn",
    install="yarn install --frozen-lockfile",
    run="yarn",
    exec="yarn exec",
    filter="yarn workspace",
)
NPM = PackageManager(
    name="npm",
    install="npm ci",
    run="npm run",
    exec="npx",
    filter="npm --workspace",
)


def detect_package_manager(path: str = ".") -> PackageManager:
    root = Path(path)
    if (root / "pnpm-lock.yaml").exists():
        return PNPM
    if (root / "yarn.lock").exists():
        return YARN
    return NPM


# ---------------------------------------------------------------------------
# Repository resolution
# ---------------------------------------------------------------------------

def repo_from_remote_url(url: str) -> str | None:
    """Extract the repository name from an HTTPS or SSH GitHub remote URL."""
    parsed = owner_repo_from_remote_url(url)
    return parsed[1] if parsed else None


def owner_repo_from_remote_url(url: str) -> tuple[str, str] | None:
    match = _REMOTE_RE.search(url or "")
    return (match.group(1), match.group(2)) if match else None


def git_remote_url(cwd: str | None = None) -> str:
    result = shell.run(["git", "config", "--get", "remote.origin.url"], cwd=cwd)
    return result.stdout.strip() if result.ok else ""


def resolve_repository(configured: str, build: BuildEnvironment, remote_url: str | None = None) -> str:
    """Pick the repository name: config, then git remote, then job name."""
    if configured:
        return configured

    url = git_remote_url() if remote_url is None else remote_url
    repo = repo_from_remote_url(url)
    if repo:
        logger.info("Extracted repo name '%s' from git remote URL", repo)
        return repo

    job = build.job_name.split("/")[0] if build.job_name else "reasonBridge"
    repo = _JOB_SUFFIX_RE.sub("", job)
    logger.info("Using fallback repo name '%s' derived from job name", repo)
    return repo


def has_open_pull_request(client: GitHubClient, owner: str, repo: str, branch: str) -> bool:
    """Ask GitHub whether *branch* has an open pull request.

    A branch built directly (not as a PR job) has no CHANGE_ID even when a PR
    exists, so this is how such builds still get the full pipeline.
    """
    try:
        pulls = client.get(
            f"/repos/{owner}/{repo}/pulls",
            {"head": f"{owner}:{branch}", "state": "open"},
        )
    except GitHubClientError as exc:
        logger.warning("Could not check for open PR: %s", exc)
        return False

    if pulls:
        logger.info("Found open PR for branch %s", branch)
        return True
    logger.info("No open PR found for branch %s", branch)
    return False
