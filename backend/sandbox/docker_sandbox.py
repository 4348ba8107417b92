"""Docker-based runner for untrusted, model-generated programs.

Every run gets a throwaway container: the program is copied in with a tar
archive, the container runs it to completion (or until the deadline), its
output is collected, and the container is always removed.
"""

import asyncio
import tarfile
import time
from dataclasses import dataclass
from io import BytesIO

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from agents.result import (
    ExecutionFailedError,
    ToolInputError,
    ToolUnavailableError,
    UpstreamUnavailableError,
)
from config import settings
from sandbox.security import normalize_language, sanitize_output, validate_code

logger = structlog.get_logger()

# Exit code reported when the program is killed at its deadline (as timeout(1)).
TIMEOUT_EXIT_CODE = 124

_PROGRAM_FILES: dict[str, tuple[str, list[str]]] = {
    "python": ("main.py", ["python", "-u", "/sandbox/main.py"]),
    "javascript": ("main.js", ["node", "/sandbox/main.js"]),
    "bash": ("main.sh", ["bash", "/sandbox/main.sh"]),
}

# Container security configuration
CONTAINER_CONFIG: dict[str, object] = {
    "cpu_period": 100000,
    "cpu_quota": 50000,  # 50% of one CPU core
    "pids_limit": 64,
    "security_opt": ["no-new-privileges"],
    "cap_drop": ["ALL"],
    "user": "65534:65534",
    "working_dir": "/sandbox",
}


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one sandboxed program run."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_ms: int = 0

    def to_llm_text(self) -> str:
        lines = [f"Exit code: {self.exit_code}"]
        if self.timed_out:
            lines.append("Timed out: the program was killed at its deadline.")
        if self.stdout.strip():
            lines.append(f"STDOUT:\n{self.stdout.strip()}")
        if self.stderr.strip():
            lines.append(f"STDERR:\n{self.stderr.strip()}")
        return "\n\n".join(lines)


class DockerCodeRunner:
    """Runs programs in single-use Docker containers.

    Attributes:
        python_image: Image for python and bash programs.
        node_image: Image for javascript programs.
        mem_limit: Container memory limit.
        network_disabled: Whether containers get no network at all.
    """

    def __init__(
        self,
        python_image: str | None = None,
        node_image: str | None = None,
        mem_limit: str | None = None,
        network_disabled: bool | None = None,
    ) -> None:
        self.python_image = python_image or settings.sandbox_python_image
        self.node_image = node_image or settings.sandbox_node_image
        self.mem_limit = mem_limit or settings.sandbox_mem_limit
        self.network_disabled = (
            settings.sandbox_network_disabled if network_disabled is None else network_disabled
        )
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def image_for(self, language: str) -> str:
        return self.node_image if language == "javascript" else self.python_image

    async def run(
        self,
        code: str,
        language: str,
        timeout_ms: int,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run a program and report how it went.

        A non-zero exit code is a normal result, not a fault; faults are
        reserved for programs that cannot be run at all.

        Args:
            code: Program source.
            language: Declared language (aliases accepted).
            timeout_ms: Wall-clock limit for the program.
            cancel_event: Checked before the container starts.

        Returns:
            ExecutionResult with sanitized stdout/stderr.

        Raises:
            ToolInputError: Unsupported language or unusable code.
            ToolUnavailableError: The language image is not present.
            UpstreamUnavailableError: The Docker daemon failed.
        """
        canonical = normalize_language(language)
        if canonical is None:
            raise ToolInputError(f"Unsupported language: {language}")
        is_valid, error_msg = validate_code(code)
        if not is_valid:
            raise ToolInputError(error_msg)

        filename, command = _PROGRAM_FILES[canonical]
        image = self.image_for(canonical)
        loop = asyncio.get_running_loop()
        timeout_seconds = timeout_ms / 1000

        try:
            container = await loop.run_in_executor(None, self._create_container, image, command)
        except ImageNotFound as e:
            raise ToolUnavailableError(f"Sandbox image not available: {image}") from e
        except DockerException as e:
            logger.error("sandbox_creation_failed", image=image, error=str(e))
            raise UpstreamUnavailableError(f"Docker unavailable: {e}") from e

        try:
            await loop.run_in_executor(None, self._copy_program, container, filename, code)
            if cancel_event is not None and cancel_event.is_set():
                raise ExecutionFailedError("Sandbox run cancelled before start")

            start = time.monotonic()
            await loop.run_in_executor(None, container.start)
            timed_out = False
            try:
                status = await asyncio.wait_for(
                    loop.run_in_executor(None, container.wait),
                    timeout=timeout_seconds,
                )
                exit_code = int(status.get("StatusCode", 1))
            except TimeoutError:
                timed_out = True
                exit_code = TIMEOUT_EXIT_CODE
                await loop.run_in_executor(None, self._kill_container, container)
                logger.warning("sandbox_program_timeout", language=canonical, timeout_ms=timeout_ms)
            duration_ms = int((time.monotonic() - start) * 1000)

            stdout, stderr = await loop.run_in_executor(None, self._collect_output, container)
        except APIError as e:
            logger.error("sandbox_run_failed", language=canonical, error=str(e))
            raise UpstreamUnavailableError(f"Docker run failed: {e}") from e
        finally:
            await loop.run_in_executor(None, self._remove_container, container)

        if timed_out:
            stderr = (stderr + f"\nProgram timed out after {timeout_seconds:g} seconds").strip()

        logger.debug(
            "sandbox_program_finished",
            language=canonical,
            exit_code=exit_code,
            timed_out=timed_out,
            duration_ms=duration_ms,
        )
        return ExecutionResult(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            duration_ms=duration_ms,
        )

    def _create_container(self, image: str, command: list[str]) -> docker.models.containers.Container:
        """Create (but do not start) the run container (blocking operation)."""
        return self.client.containers.create(
            image,
            command=command,
            detach=True,
            mem_limit=self.mem_limit,
            network_disabled=self.network_disabled,
            **CONTAINER_CONFIG,
        )

    def _copy_program(
        self, container: docker.models.containers.Container, filename: str, code: str
    ) -> None:
        """Copy the program into the container using a tar archive (blocking operation)."""
        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            directory = tarfile.TarInfo(name="sandbox")
            directory.type = tarfile.DIRTYPE
            directory.mode = 0o755
            tar.addfile(directory)

            file_data = code.encode("utf-8")
            tarinfo = tarfile.TarInfo(name=f"sandbox/{filename}")
            tarinfo.size = len(file_data)
            tarinfo.mode = 0o644
            tar.addfile(tarinfo, BytesIO(file_data))

        tar_stream.seek(0)
        container.put_archive("/", tar_stream)

    def _collect_output(self, container: docker.models.containers.Container) -> tuple[str, str]:
        """Read demultiplexed stdout/stderr (blocking operation)."""
        stdout_bytes: bytes = container.logs(stdout=True, stderr=False) or b""
        stderr_bytes: bytes = container.logs(stdout=False, stderr=True) or b""
        return (
            sanitize_output(stdout_bytes.decode("utf-8", errors="replace")),
            sanitize_output(stderr_bytes.decode("utf-8", errors="replace")),
        )

    def _kill_container(self, container: docker.models.containers.Container) -> None:
        try:
            container.kill()
        except (NotFound, APIError) as e:
            logger.debug("sandbox_kill_skipped", error=str(e))

    def _remove_container(self, container: docker.models.containers.Container) -> None:
        """Remove a run container (blocking operation)."""
        try:
            container.remove(force=True)
        except NotFound:
            pass  # Already removed
        except APIError as e:
            logger.warning("sandbox_remove_failed", container_id=container.id[:12], error=str(e))

    def is_docker_available(self) -> bool:
        """Check if the Docker daemon is reachable.

        Returns:
            True if the Docker daemon responds to a ping.
        """
        try:
            self.client.ping()
            return True
        except DockerException:
            return False
