from __future__ import annotations

from pathlib import Path

from shipyard.collaborators.base import SbomGenerator, Signer
from shipyard.collaborators.process import run_process
from shipyard.errors import CollaboratorError


class MinisignSigner(Signer):
    binaries = ("minisign",)

    def __init__(self, secret_key: Path, *, binary: str = "minisign") -> None:
        self.secret_key = secret_key
        self.binary = binary

    def build_command(self, path: Path) -> list[str]:
        return [self.binary, "-S", "-s", str(self.secret_key), "-m", str(path)]

    async def sign(self, path: Path) -> Path:
        result = await run_process(self.build_command(path), collaborator="minisign")
        signature = path.with_name(f"{path.name}.minisig")
        if result.exit_code != 0 or not signature.exists():
            raise CollaboratorError(
                f"minisign failed for {path.name} (exit {result.exit_code}): "
                f"{result.stderr.strip()[:200]}",
                collaborator="minisign",
                exit_code=result.exit_code,
                retriable=False,
            )
        return signature


class SyftSbomGenerator(SbomGenerator):
    binaries = ("syft",)

    def __init__(self, *, binary: str = "syft", output_format: str = "spdx-json") -> None:
        self.binary = binary
        self.output_format = output_format

    def build_command(self, path: Path, output: Path) -> list[str]:
        return [self.binary, "scan", f"file:{path}", "-o", f"{self.output_format}={output}"]

    async def generate(self, path: Path) -> Path:
        output = path.with_name(f"{path.name}.spdx.json")
        result = await run_process(self.build_command(path, output), collaborator="syft")
        if result.exit_code != 0 or not output.exists():
            raise CollaboratorError(
                f"syft failed for {path.name} (exit {result.exit_code}): "
                f"{result.stderr.strip()[:200]}",
                collaborator="syft",
                exit_code=result.exit_code,
                retriable=False,
            )
        return output
