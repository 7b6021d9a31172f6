"""GitHub commit status reporting.

Usage:
    reporter = StatusReporter(client, owner="org", repo="app", sha=build.git_commit)
    reporter.pending("jenkins/unit-tests", "Unit tests running")
    reporter.report("success", "jenkins/unit-tests", "All tests passed")

Status updates are best effort: API failures are logged and never fail the
build. An invalid state is a programming error and raises InvalidStatusError.
"""

import logging

from ci_pipeline.client import GitHubClient, GitHubClientError

logger = logging.getLogger(__name__)

VALID_STATES = ("pending", "success", "failure", "error")
DESCRIPTION_LIMIT = 140  # enforced by the GitHub API


class InvalidStatusError(ValueError):
    """Raised for a state GitHub does not accept."""


class StatusReporter:
    """Posts commit statuses for one commit of one repository."""

    def __init__(
        self,
        client: GitHubClient | None,
        owner: str,
        repo: str,
        sha: str,
        target_url: str | None = None,
    ) -> None:
        self._client = client
        self.owner = owner
        self.repo = repo
        self.sha = sha
        self.target_url = target_url

    def report(
        self,
        state: str,
        context: str = "jenkins/ci",
        description: str = "Jenkins build",
        target_url: str | None = None,
    ) -> bool:
        """Post a status; returns True when GitHub accepted it."""
        if state not in VALID_STATES:
            raise InvalidStatusError(
                f"Invalid status '{state}'. Must be one of: {', '.join(VALID_STATES)}"
            )

        if not self.sha:
            logger.warning("GIT_COMMIT not set, skipping GitHub status update")
            return False
        if self._client is None:
            logger.warning("No GitHub token configured, skipping GitHub status update")
            return False
        if not self.owner or not self.repo:
            logger.warning("GitHub owner/repo unknown, skipping GitHub status update")
            return False

        logger.info("Reporting GitHub status: %s for %s on %s", state, context, self.sha[:7])
        payload = {
            "state": state,
            "context": context,
            "description": description[:DESCRIPTION_LIMIT],
            "target_url": target_url or self.target_url,
        }

        try:
            self._client.post(f"/repos/{self.owner}/{self.repo}/statuses/{self.sha}", payload)
        except GitHubClientError as exc:
            logger.warning("GitHub status API call failed: %s", exc)
            return False

        logger.info("GitHub status updated successfully")
        return True

    def pending(self, context: str, description: str = "Build in progress") -> bool:
        return self.report("pending", context, description)

    def success(self, context: str, description: str = "Build succeeded") -> bool:
        return self.report("success", context, description)

    def failure(self, context: str, description: str = "Build failed") -> bool:
        return self.report("failure", context, description)

    def error(self, context: str, description: str = "Build error") -> bool:
        return self.report("error", context, description)
