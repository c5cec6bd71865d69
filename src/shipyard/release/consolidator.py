from __future__ import annotations

import asyncio
import hashlib
import json
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shipyard.collaborators.base import SbomGenerator, Signer
from shipyard.errors import CollaboratorError, DependencyError
from shipyard.models import Artifact, BuildTarget, split_platform, utcnow_iso
from shipyard.release.naming import generate_dual, split_extension

EventHook = Callable[[dict[str, Any]], None]

CHECKSUMS_FILE = "SHA256SUMS"
MANIFEST_FILE = "manifest.json"


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class ArtifactIssue:
    name: str
    stage: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "stage": self.stage, "error": self.error}


@dataclass(slots=True)
class ReleaseManifest:
    repo: str
    version: str
    output_dir: Path
    artifacts: list[Artifact] = field(default_factory=list)
    aliases: dict[str, str] = field(default_factory=dict)
    issues: list[ArtifactIssue] = field(default_factory=list)
    checksums_path: Path | None = None
    installer_path: Path | None = None
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def release_failed(self) -> bool:
        return bool(self.issues)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "version": self.version,
            "output_dir": str(self.output_dir),
            "created_at": self.created_at,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "aliases": dict(self.aliases),
            "checksums": str(self.checksums_path) if self.checksums_path else None,
            "installer": str(self.installer_path) if self.installer_path else None,
            "issues": [issue.to_dict() for issue in self.issues],
            "release_failed": self.release_failed,
        }


class ArtifactConsolidator:
    """Gathers successful build outputs into one signed, checksummed release directory.

    Problems with a single artifact (a name collision, a failed signature, a failed
    SBOM) are recorded as issues against that artifact; the remaining artifacts are
    still published.
    """

    def __init__(
        self,
        output_dir: Path,
        *,
        signer: Signer | None = None,
        sbom: SbomGenerator | None = None,
        binary_name: str = "",
        compat_template: str | None = None,
        max_concurrency: int = 4,
        event_hook: EventHook | None = None,
    ) -> None:
        self.output_dir = output_dir
        self.signer = signer
        self.sbom = sbom
        self.binary_name = binary_name
        self.compat_template = compat_template
        self.max_concurrency = max(1, max_concurrency)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def published_names(self, artifact: Artifact, version: str) -> tuple[str, str | None]:
        """Return the release asset name for ``artifact`` and an optional compat alias."""
        filename = artifact.path.name
        _, extension = split_extension(filename)
        if not self.binary_name or not extension:
            return filename, None
        os_name, arch = split_platform(artifact.platform)
        dual = generate_dual(
            self.binary_name,
            version,
            os_name,
            arch,
            extension.lstrip("."),
            self.compat_template,
        )
        return dual.versioned, None if dual.same else dual.compat

    def _publish(
        self, repo: str, version: str, targets: list[BuildTarget]
    ) -> ReleaseManifest:
        manifest = ReleaseManifest(repo=repo, version=version, output_dir=self.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        taken: dict[str, str] = {}
        for target in targets:
            if target.status != "success":
                continue
            for artifact in target.artifacts:
                name, alias = self.published_names(artifact, version)
                source = str(artifact.path)
                for candidate in filter(None, (name, alias)):
                    if candidate in taken:
                        manifest.issues.append(
                            ArtifactIssue(
                                name=candidate,
                                stage="consolidate",
                                error=f"{source} collides with {taken[candidate]}",
                            )
                        )
                if name in taken or (alias and alias in taken):
                    continue
                destination = self.output_dir / name
                shutil.copy2(artifact.path, destination)
                published = Artifact.from_file(artifact.platform, destination)
                published.sha256 = sha256_file(destination)
                manifest.artifacts.append(published)
                taken[name] = source
                if alias:
                    shutil.copy2(destination, self.output_dir / alias)
                    manifest.aliases[alias] = name
                    taken[alias] = source
        return manifest

    async def _sign_and_describe(
        self,
        artifact: Artifact,
        manifest: ReleaseManifest,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if self.signer is not None:
                try:
                    artifact.signature_path = await self.signer.sign(artifact.path)
                    artifact.signed = True
                except DependencyError:
                    raise
                except CollaboratorError as exc:
                    manifest.issues.append(
                        ArtifactIssue(name=artifact.path.name, stage="sign", error=str(exc))
                    )
            if self.sbom is not None:
                try:
                    artifact.sbom_path = await self.sbom.generate(artifact.path)
                except DependencyError:
                    raise
                except CollaboratorError as exc:
                    manifest.issues.append(
                        ArtifactIssue(name=artifact.path.name, stage="sbom", error=str(exc))
                    )

    def _write_checksums(self, manifest: ReleaseManifest) -> Path:
        entries = {artifact.path.name: artifact.sha256 for artifact in manifest.artifacts}
        for alias, name in manifest.aliases.items():
            entries[alias] = entries[name]
        path = self.output_dir / CHECKSUMS_FILE
        path.write_text(
            "".join(f"{digest}  {name}\n" for name, digest in sorted(entries.items())),
            encoding="utf-8",
        )
        return path

    async def consolidate(
        self, repo: str, version: str, targets: list[BuildTarget]
    ) -> ReleaseManifest:
        manifest = self._publish(repo, version, targets)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = [
            asyncio.create_task(self._sign_and_describe(artifact, manifest, semaphore))
            for artifact in manifest.artifacts
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        manifest.checksums_path = self._write_checksums(manifest)
        self.write_manifest(manifest)
        for issue in manifest.issues:
            self._emit({"event": "release_issue", **issue.to_dict()})
        self._emit(
            {
                "event": "release_consolidated",
                "repo": repo,
                "version": version,
                "artifacts": len(manifest.artifacts),
                "issues": len(manifest.issues),
            }
        )
        return manifest

    def write_manifest(self, manifest: ReleaseManifest) -> Path:
        path = self.output_dir / MANIFEST_FILE
        path.write_text(json.dumps(manifest.to_dict(), indent=2) + "\n", encoding="utf-8")
        return path
