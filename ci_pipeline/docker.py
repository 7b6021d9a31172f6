"""Docker Compose lifecycle and test-environment cleanup.

Functions:
    compose(command, compose_file, project_name)       V2 with V1 fallback, raises
    compose_safe(command, compose_file, project_name)  same, never raises
    cleanup(...)                                       compose down + ports + lockfiles
    clean_containers_by_pattern(prefix)
    aggressive_e2e_cleanup(ports)                      -> list of ports still busy
    clean_stale_networks()
    verify_e2e_ports_free(ports, max_retries, retry_delay)

Builds isolate their stacks with a per-build COMPOSE_PROJECT_NAME
(``e2e-build-42``), so cleanup can target one build's containers by name prefix.
Containers from crashed builds are found by published port as well.
"""

import logging
import os
import re
import shlex
import signal
import time
from pathlib import Path
from typing import Iterable, Sequence

from ci_pipeline import shell
from ci_pipeline.environment import E2E_PORTS, SERVICE_PORTS
from ci_pipeline.shell import CommandError, CommandResult

logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_FILE = "docker-compose.yml"

LOCKFILES = (".e2e-port.json", ".e2e-jwt-token.json", ".dev-server-pid", ".e2e-services-pid")

E2E_CONTAINER_RE = re.compile(r"^e2e-build-|^unite-.*-e2e|^playwright-e2e-")
INTEGRATION_CONTAINER_RE = re.compile(
    r"^int-test-build-|^unite-.*-test|postgres.*test|redis.*test|localstack.*test"
)
TEST_NETWORK_RE = re.compile(r"^e2e-build-|^int-test-build-|_unite-e2e$|_unite-test$")
STALE_NETWORK_RE = re.compile(r"e2e|test")

_PID_RE = re.compile(r"pid=(\d+)")


class PortsBusyError(Exception):
    """Raised when E2E ports are still taken after every cleanup attempt."""

    def __init__(self, ports: list[int], attempts: int) -> None:
        self.ports = ports
        super().__init__(
            f"Failed to free E2E ports after {attempts} attempts "
            f"(still in use: {', '.join(map(str, ports))}). "
            "Check for zombie containers or host processes."
        )


# ---------------------------------------------------------------------------
# Compose
# ---------------------------------------------------------------------------

def compose(
    command: str | Sequence[str],
    compose_file: str = DEFAULT_COMPOSE_FILE,
    project_name: str = "",
    *,
    check: bool = True,
    capture: bool = False,
) -> CommandResult:
    """Run a compose command with ``docker compose``, then ``docker-compose``.

    Some agents only ship the V1 binary, so any V2 failure triggers one V1
    attempt with the same arguments.

    Raises:
        CommandError: when both variants fail and *check* is true.
    """
    parts = shlex.split(command) if isinstance(command, str) else list(command)
    env = {"COMPOSE_PROJECT_NAME": project_name} if project_name else None

    result = shell.run(["docker", "compose", "-f", compose_file, *parts], env=env, capture=capture)
    if not result.ok:
        logger.debug("docker compose failed, retrying with docker-compose")
        result = shell.run(["docker-compose", "-f", compose_file, *parts], env=env, capture=capture)

    if check and not result.ok:
        raise CommandError(result)
    return result


def compose_safe(
    command: str | Sequence[str],
    compose_file: str = DEFAULT_COMPOSE_FILE,
    project_name: str = "",
) -> CommandResult:
    """Like :func:`compose` but ignores failures (for cleanup paths)."""
    return compose(command, compose_file, project_name, check=False, capture=True)


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

def cleanup(
    compose_file: str = "deployment/docker/docker-compose.test.yml",
    ports: Iterable[int] = SERVICE_PORTS,
    *,
    clean_lockfiles: bool = True,
    project_pattern: str = "",
    workdir: str | Path = ".",
    quiet: bool = False,
) -> None:
    """Stop the compose stack and free the service ports."""
    if not quiet:
        logger.info("Cleaning up Docker and ports...")

    compose_safe("down -v --remove-orphans", compose_file)

    if project_pattern:
        clean_containers_by_pattern(project_pattern, quiet=quiet)

    for port in ports:
        kill_pids(pids_on_port(port))

    if clean_lockfiles:
        for name in LOCKFILES:
            (Path(workdir) / name).unlink(missing_ok=True)

    if not quiet:
        logger.info("Cleanup complete")


def clean_containers_by_pattern(prefix: str, *, quiet: bool = False) -> None:
    """Remove containers, networks and volumes whose name starts with *prefix*.

    ``e2e-build-40-`` matches ``e2e-build-40-postgres-1`` and the
    ``e2e-build-40_default`` network is matched by ``e2e-build-40``.
    """
    if not quiet:
        logger.info("Cleaning containers matching pattern: %s*", prefix)

    targets = (
        ("containers", ["docker", "ps", "-a", "--format", "{{.Names}}"], ["docker", "rm", "-f"]),
        ("networks", ["docker", "network", "ls", "--format", "{{.Name}}"], ["docker", "network", "rm"]),
        ("volumes", ["docker", "volume", "ls", "--format", "{{.Name}}"], ["docker", "volume", "rm"]),
    )
    for kind, list_cmd, remove_cmd in targets:
        names = [n for n in _names(list_cmd) if n.startswith(prefix)]
        if names:
            logger.info("Removing %s: %s", kind, " ".join(names))
            shell.run([*remove_cmd, *names])


def clean_stale_networks() -> None:
    """Remove networks with ``e2e`` or ``test`` in the name, then prune."""
    logger.info("Cleaning stale Docker networks...")
    _remove_networks(STALE_NETWORK_RE)
    shell.run(["docker", "network", "prune", "-f"])


def aggressive_e2e_cleanup(
    ports: Iterable[int] = E2E_PORTS,
    *,
    settle_delay: float = 5,
    verify_attempts: int = 3,
    retry_delay: float = 3,
) -> list[int]:
    """Remove every E2E-related container, network and port holder.

    Crashed builds leave containers behind under any name, and docker-proxy can
    hold a port after its container is gone, so ports are freed both through
    Docker and by killing host processes. Returns the ports still busy after
    ``verify_attempts`` verification rounds (empty when all are free).
    """
    ports = list(ports)
    logger.info("Performing aggressive E2E cleanup...")

    logger.info("=== Removing containers by port binding ===")
    for port in ports:
        names = _names(["docker", "ps", "-a", "--filter", f"publish={port}", "--format", "{{.Names}}"])
        if names:
            logger.info("Found containers on port %d: %s", port, " ".join(names))
            shell.run(["docker", "rm", "-f", *names])

    logger.info("=== Removing E2E and integration test containers by name ===")
    all_names = _names(["docker", "ps", "-a", "--format", "{{.Names}}"])
    stale = [
        n for n in all_names
        if E2E_CONTAINER_RE.search(n) or INTEGRATION_CONTAINER_RE.search(n)
    ]
    if stale:
        shell.run(["docker", "rm", "-f", *stale])

    logger.info("=== Killing docker-proxy and host processes on E2E ports ===")
    for port in ports:
        proxies = docker_proxy_pids(port)
        if proxies:
            logger.info("Found docker-proxy on port %d with PIDs: %s", port, proxies)
            kill_pids(proxies)
        pids = pids_on_port(port)
        if pids:
            logger.info("Killing processes %s on port %d", pids, port)
            kill_pids(pids)

    logger.info("=== Removing test networks ===")
    _remove_networks(TEST_NETWORK_RE)
    shell.run(["docker", "network", "prune", "-f"])

    logger.info("=== Waiting for Docker to release resources ===")
    time.sleep(settle_delay)

    busy: list[int] = []
    for attempt in range(1, verify_attempts + 1):
        busy = [p for p in ports if port_in_use(p)]
        if not busy:
            logger.info("All E2E ports are free")
            break

        logger.info("Attempt %d/%d: Ports still in use: %s", attempt, verify_attempts, busy)
        if attempt < verify_attempts:
            for port in busy:
                kill_pids(pids_on_port(port) + docker_proxy_pids(port))
                shell.run(["fuser", "-k", f"{port}/tcp"])
            time.sleep(retry_delay)
        else:
            logger.warning(
                "Some ports still in use after %d cleanup attempts: %s", verify_attempts, busy
            )
            for port in busy:
                holders = shell.run(["lsof", "-i", f":{port}"])
                logger.warning("Port %d:\n%s", port, holders.stdout.strip() or "(no lsof output)")

    logger.info("=== Aggressive cleanup complete ===")
    return busy


def verify_e2e_ports_free(
    ports: Iterable[int] = E2E_PORTS,
    max_retries: int = 3,
    retry_delay: float = 5,
) -> bool:
    """Check the E2E ports right before starting the stack.

    Between attempts the aggressive cleanup runs and we wait *retry_delay*
    seconds.

    Raises:
        PortsBusyError: if ports are still in use after *max_retries* checks.
    """
    ports = list(ports)
    logger.info("Verifying E2E ports are free...")
    busy: list[int] = []

    for attempt in range(1, max_retries + 1):
        busy = [p for p in ports if port_in_use(p, check_containers=True)]
        if not busy:
            logger.info("All E2E ports verified free on attempt %d", attempt)
            return True

        logger.info("Ports in use: %s", busy)
        if attempt < max_retries:
            logger.info(
                "Attempt %d/%d: Ports still in use, running cleanup...", attempt, max_retries
            )
            aggressive_e2e_cleanup(ports)
            time.sleep(retry_delay)

    raise PortsBusyError(busy, max_retries)


# ---------------------------------------------------------------------------
# Ports and processes
# ---------------------------------------------------------------------------

def pids_on_port(port: int) -> list[int]:
    """PIDs listening on *port*: lsof, then fuser, then ss."""
    result = shell.run(["lsof", "-ti", f":{port}"])
    pids = _ints(result.stdout.split()) if result.ok else []
    if pids:
        return pids

    # fuser prints the PIDs on stdout and "<port>/tcp:" on stderr
    result = shell.run(["fuser", f"{port}/tcp"])
    pids = _ints(result.stdout.split()) if result.ok else []
    if pids:
        return pids

    result = shell.run(["ss", "-tlnp"])
    if not result.ok:
        return []
    pids = []
    for line in result.stdout.splitlines():
        if f":{port} " in line:
            pids.extend(_ints(_PID_RE.findall(line)))
    return pids


def docker_proxy_pids(port: int) -> list[int]:
    result = shell.run(["ps", "aux"])
    if not result.ok:
        return []
    proxy_re = re.compile(rf"docker-proxy.*:{port}\b")
    pids = []
    for line in result.stdout.splitlines():
        if proxy_re.search(line):
            fields = line.split()
            if len(fields) > 1:
                pids.extend(_ints([fields[1]]))
    return pids


def port_in_use(port: int, *, check_containers: bool = False) -> bool:
    result = shell.run(["lsof", "-ti", f":{port}"])
    if result.ok and result.lines():
        return True

    result = shell.run(["ss", "-tln"])
    if result.ok and any(f":{port} " in line for line in result.stdout.splitlines()):
        return True

    if check_containers:
        names = _names(["docker", "ps", "--filter", f"publish={port}", "--format", "{{.Names}}"])
        return bool(names)
    return False


def kill_pids(pids: Iterable[int]) -> None:
    for pid in sorted(set(pids)):
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            logger.warning("Not permitted to kill process %d", pid)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _names(args: list[str]) -> list[str]:
    result = shell.run(args)
    return result.lines() if result.ok else []


def _remove_networks(pattern: re.Pattern) -> None:
    networks = [n for n in _names(["docker", "network", "ls", "--format", "{{.Name}}"]) if pattern.search(n)]
    if networks:
        logger.info("Removing networks: %s", " ".join(networks))
        shell.run(["docker", "network", "rm", *networks])


def _ints(values: Iterable[str]) -> list[int]:
    out = []
    for value in values:
        try:
            out.append(int(value))
        except ValueError:
            continue
    return out
