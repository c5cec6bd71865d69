from __future__ import annotations

from pathlib import Path
from uuid import uuid4

from shipyard.collaborators.base import ContainerReplay, OutputHook, ReplayResult
from shipyard.collaborators.process import run_process


class ActReplay(ContainerReplay):
    """Replays GitHub Actions jobs locally with nektos/act."""

    binaries = ("act", "docker")

    def __init__(
        self,
        artifact_root: Path,
        *,
        binary: str = "act",
        event: str = "push",
        extra_args: list[str] | None = None,
    ) -> None:
        self.artifact_root = artifact_root
        self.binary = binary
        self.event = event
        self.extra_args = list(extra_args or [])

    def build_command(self, workflow_file: Path, job_name: str, artifact_dir: Path) -> list[str]:
        return [
            self.binary,
            "-W",
            str(workflow_file),
            "-j",
            job_name,
            "--artifact-server-path",
            str(artifact_dir),
            self.event,
            *self.extra_args,
        ]

    async def run(
        self,
        workflow_file: Path,
        job_name: str,
        *,
        workdir: Path | None = None,
        on_output: OutputHook | None = None,
    ) -> ReplayResult:
        artifact_dir = self.artifact_root / f"{job_name}-{uuid4().hex[:8]}"
        artifact_dir.mkdir(parents=True, exist_ok=True)
        result = await run_process(
            self.build_command(workflow_file, job_name, artifact_dir),
            cwd=workdir,
            on_output=on_output,
            collaborator="act",
        )
        artifact_paths = sorted(path for path in artifact_dir.rglob("*") if path.is_file())
        return ReplayResult(
            exit_code=result.exit_code,
            artifact_paths=artifact_paths,
            stdout=result.stdout,
            stderr=result.stderr,
        )
