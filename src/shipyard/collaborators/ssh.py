from __future__ import annotations

from pathlib import Path, PurePosixPath, PureWindowsPath

from shipyard.collaborators.base import NativeRemote, OutputHook, ProcessResult
from shipyard.collaborators.process import run_process
from shipyard.errors import NetworkError

SSH_CONNECTION_FAILURE = 255


class SshRemote(NativeRemote):
    """Runs native builds on remote hosts over OpenSSH."""

    binaries = ("ssh", "scp")

    def __init__(
        self,
        *,
        ssh_binary: str = "ssh",
        scp_binary: str = "scp",
        connect_timeout_seconds: int = 10,
    ) -> None:
        self.ssh_binary = ssh_binary
        self.scp_binary = scp_binary
        self.connect_timeout_seconds = connect_timeout_seconds

    def _options(self) -> list[str]:
        return [
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout_seconds}",
        ]

    def build_command(self, host: str, command: str) -> list[str]:
        return [self.ssh_binary, *self._options(), host, command]

    async def execute(
        self,
        host: str,
        command: str,
        *,
        on_output: OutputHook | None = None,
    ) -> ProcessResult:
        return await run_process(
            self.build_command(host, command), on_output=on_output, collaborator="ssh"
        )

    async def fetch_file(self, host: str, remote_path: str, local_dir: Path) -> Path:
        local_dir.mkdir(parents=True, exist_ok=True)
        if "\\" in remote_path:
            name = PureWindowsPath(remote_path).name
        else:
            name = PurePosixPath(remote_path).name
        destination = local_dir / name
        result = await run_process(
            [self.scp_binary, *self._options(), f"{host}:{remote_path}", str(destination)],
            collaborator="scp",
        )
        if result.exit_code != 0:
            raise NetworkError(
                f"scp from {host}:{remote_path} failed with exit code {result.exit_code}: "
                f"{result.stderr.strip()[:200]}",
                collaborator="scp",
                exit_code=result.exit_code,
            )
        return destination
