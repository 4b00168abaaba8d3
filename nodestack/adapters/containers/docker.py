"""
Docker Compose driver: service operations through the docker CLI.

Every call shells out to ``docker compose`` against the configured
compose file. Never the Docker API directly.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import time
from pathlib import Path

from nodestack.adapters.base import ContainerDriver, ContainerStatus
from nodestack.core.errors import ConnectivityError
from nodestack.core.models.receipt import Receipt

logger = logging.getLogger(__name__)


class DockerComposeDriver(ContainerDriver):
    """Compose-backed container driver.

    Args:
        compose_file: docker-compose.yml describing every service.
        project: Optional compose project name (``-p``).
        timeout: Default timeout in seconds for start/stop/prepare.
    """

    def __init__(
        self,
        compose_file: Path,
        *,
        project: str | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.compose_file = Path(compose_file)
        self.project = project
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "docker"

    def is_available(self) -> bool:
        return shutil.which("docker") is not None

    # ── Operations ──────────────────────────────────────────────

    def prepare(self, service: str) -> Receipt:
        return self._operation("prepare", service, ["pull", "--quiet", service], timeout=max(self.timeout, 600))

    def start(self, service: str) -> Receipt:
        return self._operation("start", service, ["up", "-d", "--no-deps", service])

    def stop(self, service: str) -> Receipt:
        return self._operation("stop", service, ["stop", service])

    def status(self, service: str) -> ContainerStatus:
        try:
            result = self._compose(["ps", "--all", "--format", "json", service], timeout=15)
        except subprocess.TimeoutExpired as e:
            raise ConnectivityError("docker compose ps timed out", target="docker", timed_out=True) from e
        except OSError as e:
            raise ConnectivityError(f"Cannot run docker: {e}", target="docker") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "no such service" in stderr.lower():
                return ContainerStatus(service=service)
            raise ConnectivityError(stderr or "docker compose ps failed", target="docker")

        for entry in _parse_ps(result.stdout):
            if entry.get("Service") not in (None, service):
                continue
            state = str(entry.get("State", "")).lower()
            health = str(entry.get("Health", "") or "none").lower()
            return ContainerStatus(
                service=service,
                exists=True,
                running=state == "running",
                health=health,
                state=state,
            )
        return ContainerStatus(service=service)

    def logs(self, service: str, tail: int = 50) -> list[str]:
        try:
            result = self._compose(["logs", "--no-color", f"--tail={tail}", service], timeout=15)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug("Cannot read logs for %s: %s", service, e)
            return []
        if result.returncode != 0:
            return []
        return result.stdout.splitlines()[-tail:]

    # ── Helpers ─────────────────────────────────────────────────

    def _compose(self, args: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
        cmd = ["docker", "compose", "-f", str(self.compose_file)]
        if self.project:
            cmd += ["-p", self.project]
        return subprocess.run(
            [*cmd, *args],
            cwd=self.compose_file.parent,
            capture_output=True,
            text=True,
            timeout=timeout,
        )

    def _operation(self, operation: str, service: str, args: list[str], timeout: float | None = None) -> Receipt:
        timeout = timeout or self.timeout
        start = time.monotonic()
        try:
            result = self._compose(args, timeout=timeout)
        except subprocess.TimeoutExpired:
            return Receipt.timeout(self.name, operation, service, timeout)
        except OSError as e:
            return Receipt.failure(self.name, operation, service, error=f"Cannot run docker: {e}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if result.returncode == 0:
            logger.debug("docker %s %s ok (%dms)", operation, service, elapsed_ms)
            return Receipt.success(
                self.name, operation, service,
                output=result.stdout.strip(),
                duration_ms=elapsed_ms,
                metadata={"return_code": 0},
            )
        return Receipt.failure(
            self.name, operation, service,
            error=result.stderr.strip() or f"Exit code {result.returncode}",
            duration_ms=elapsed_ms,
            metadata={"return_code": result.returncode},
        )


def _parse_ps(stdout: str) -> list[dict]:
    """``docker compose ps --format json`` prints a JSON array or JSON lines."""
    text = stdout.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
        return data if isinstance(data, list) else [data]
    except json.JSONDecodeError:
        pass
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug("Skipping unparseable ps line: %s", line[:80])
    return entries
