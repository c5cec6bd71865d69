from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

OutputHook = Callable[[str, str], None]


@dataclass(slots=True)
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


@dataclass(slots=True)
class ReplayResult:
    exit_code: int
    artifact_paths: list[Path] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""


class QueueTimeSource(ABC):
    binaries: tuple[str, ...] = ()

    @abstractmethod
    async def get_queue_time(self, repo: str, workflow: str) -> float:
        """Return the queue duration in seconds of the most recent relevant run."""


class ContainerReplay(ABC):
    binaries: tuple[str, ...] = ()

    @abstractmethod
    async def run(
        self,
        workflow_file: Path,
        job_name: str,
        *,
        workdir: Path | None = None,
        on_output: OutputHook | None = None,
    ) -> ReplayResult:
        """Replay one workflow job inside a container."""


class NativeRemote(ABC):
    binaries: tuple[str, ...] = ()

    @abstractmethod
    async def execute(
        self,
        host: str,
        command: str,
        *,
        on_output: OutputHook | None = None,
    ) -> ProcessResult:
        """Run a shell command on a remote build host."""

    @abstractmethod
    async def fetch_file(self, host: str, remote_path: str, local_dir: Path) -> Path:
        """Copy a file from a remote build host and return its local path."""


class Signer(ABC):
    binaries: tuple[str, ...] = ()

    @abstractmethod
    async def sign(self, path: Path) -> Path:
        """Sign ``path`` and return the signature file."""


class SbomGenerator(ABC):
    binaries: tuple[str, ...] = ()

    @abstractmethod
    async def generate(self, path: Path) -> Path:
        """Produce a software bill of materials for ``path``."""
