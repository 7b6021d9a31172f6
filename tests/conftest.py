"""Shared fixtures: a scripted stand-in for ci_pipeline.shell.run."""

import pytest

from ci_pipeline.shell import CommandError, CommandResult


class FakeShell:
    """Records every command and answers from a list of scripted responses.

    ``respond(["docker", "ps"], stdout="a\\nb")`` answers any command starting
    with ``docker ps``. Passing several results makes successive calls consume
    them in order, the last one repeating. Unmatched commands succeed silently.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []
        self._responses: list[tuple[tuple[str, ...], list[CommandResult]]] = []

    def respond(self, prefix, *results: tuple[int, str]) -> None:
        scripted = [CommandResult([], rc, out, "") for rc, out in results]
        self._responses.append((tuple(prefix), scripted))

    def ok(self, prefix, stdout: str = "") -> None:
        self.respond(prefix, (0, stdout))

    def fail(self, prefix, returncode: int = 1) -> None:
        self.respond(prefix, (returncode, ""))

    def __call__(self, args, **kwargs) -> CommandResult:
        args = [str(a) for a in args]
        self.calls.append(args)
        self.kwargs.append(kwargs)

        result = CommandResult(args, 0, "", "")
        for prefix, scripted in self._responses:
            if tuple(args[:len(prefix)]) == prefix:
                template = scripted.pop(0) if len(scripted) > 1 else scripted[0]
                result = CommandResult(args, template.returncode, template.stdout, "")
                break

        if kwargs.get("check") and not result.ok:
            raise CommandError(result)
        return result

    def ran(self, *prefix: str) -> list[list[str]]:
        """Every recorded command starting with *prefix*."""
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


@pytest.fixture
def fake_shell(monkeypatch) -> FakeShell:
    fake = FakeShell()
    monkeypatch.setattr("ci_pipeline.shell.run", fake)
    return fake


@pytest.fixture
def no_sleep(monkeypatch) -> list[float]:
    delays: list[float] = []
    monkeypatch.setattr("ci_pipeline.docker.time.sleep", delays.append)
    return delays


@pytest.fixture
def killed(monkeypatch) -> list[int]:
    pids: list[int] = []
    monkeypatch.setattr("ci_pipeline.docker.os.kill", lambda pid, sig: pids.append(pid))
    return pids
