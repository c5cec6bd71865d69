import asyncio
import json
import stat
from pathlib import Path

import pytest

from shipyard.collaborators.base import SbomGenerator, Signer
from shipyard.errors import CollaboratorError, DependencyError, ReleaseFailed
from shipyard.models import Artifact, BuildTarget
from shipyard.release import (
    ArtifactConsolidator,
    extract_pattern,
    render_installer,
    sha256_file,
    write_installer,
)
from shipyard.release.installer import shell_template
from shipyard.release.naming import no_pattern


class FakeSigner(Signer):
    def __init__(self, fail_on: str | None = None, error: Exception | None = None) -> None:
        self.fail_on = fail_on
        self.error = error
        self.signed: list[str] = []

    async def sign(self, path: Path) -> Path:
        if self.error is not None:
            raise self.error
        if self.fail_on and self.fail_on in path.name:
            raise CollaboratorError("minisign: bad passphrase", collaborator="minisign")
        self.signed.append(path.name)
        signature = path.with_name(path.name + ".minisig")
        signature.write_text("signature\n", encoding="utf-8")
        return signature


class FakeSbom(SbomGenerator):
    def __init__(self, fail_on: str | None = None) -> None:
        self.fail_on = fail_on

    async def generate(self, path: Path) -> Path:
        if self.fail_on and self.fail_on in path.name:
            raise CollaboratorError("syft: unsupported archive", collaborator="syft")
        sbom = path.with_name(path.name + ".spdx.json")
        sbom.write_text("{}\n", encoding="utf-8")
        return sbom


def _target(
    tmp_path: Path, job: str, platform: str, filename: str, content: bytes
) -> BuildTarget:
    build_dir = tmp_path / "build" / job
    build_dir.mkdir(parents=True, exist_ok=True)
    path = build_dir / filename
    path.write_bytes(content)
    target = BuildTarget(job=job, platform=platform, strategy="container-replay", host="trj")
    target.transition("running")
    target.artifacts = [Artifact.from_file(platform, path)]
    target.transition("success")
    return target


def _targets(tmp_path: Path) -> list[BuildTarget]:
    return [
        _target(tmp_path, "linux", "linux/amd64", "tool-linux-amd64.tar.gz", b"linux"),
        _target(tmp_path, "mac", "darwin/arm64", "tool-darwin-arm64.tar.gz", b"mac"),
    ]


def test_consolidate_publishes_versioned_and_compat_names(tmp_path: Path) -> None:
    out = tmp_path / "dist"
    consolidator = ArtifactConsolidator(
        out, binary_name="tool", compat_template="tool-{target}.{ext}"
    )

    manifest = asyncio.run(consolidator.consolidate("example/tool", "v1.2.0", _targets(tmp_path)))

    assert sorted(artifact.path.name for artifact in manifest.artifacts) == [
        "tool-1.2.0-darwin-arm64.tar.gz",
        "tool-1.2.0-linux-amd64.tar.gz",
    ]
    assert manifest.aliases == {
        "tool-linux-amd64.tar.gz": "tool-1.2.0-linux-amd64.tar.gz",
        "tool-darwin-arm64.tar.gz": "tool-1.2.0-darwin-arm64.tar.gz",
    }
    assert manifest.release_failed is False
    lines = (out / "SHA256SUMS").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 4
    digest, name = lines[0].split("  ")
    assert digest == sha256_file(out / name)
    on_disk = json.loads((out / "manifest.json").read_text(encoding="utf-8"))
    assert on_disk["repo"] == "example/tool"
    assert on_disk["release_failed"] is False


def test_failed_targets_are_not_published(tmp_path: Path) -> None:
    targets = _targets(tmp_path)
    broken = BuildTarget(job="win", platform="windows/amd64", strategy="native-remote", host="w")
    broken.transition("running")
    broken.transition("failed", cause="exit_code")
    consolidator = ArtifactConsolidator(tmp_path / "dist")

    manifest = asyncio.run(consolidator.consolidate("example/tool", "v1.2.0", [*targets, broken]))

    assert [artifact.path.name for artifact in manifest.artifacts] == [
        "tool-linux-amd64.tar.gz",
        "tool-darwin-arm64.tar.gz",
    ]
    assert manifest.aliases == {}


def test_name_collision_is_an_issue_not_an_overwrite(tmp_path: Path) -> None:
    targets = [
        _target(tmp_path, "a", "linux/amd64", "tool-linux-amd64.tar.gz", b"first"),
        _target(tmp_path, "b", "linux/amd64", "tool-linux-amd64.tar.gz", b"second"),
    ]
    out = tmp_path / "dist"
    consolidator = ArtifactConsolidator(out)

    manifest = asyncio.run(consolidator.consolidate("example/tool", "v1.2.0", targets))

    assert len(manifest.artifacts) == 1
    assert (out / "tool-linux-amd64.tar.gz").read_bytes() == b"first"
    assert manifest.issues[0].stage == "consolidate"
    assert manifest.release_failed is True


def test_signing_failure_is_per_artifact(tmp_path: Path) -> None:
    events: list[dict] = []
    signer = FakeSigner(fail_on="darwin")
    consolidator = ArtifactConsolidator(
        tmp_path / "dist", signer=signer, sbom=FakeSbom(), event_hook=events.append
    )

    manifest = asyncio.run(consolidator.consolidate("example/tool", "v1.2.0", _targets(tmp_path)))

    by_name = {artifact.path.name: artifact for artifact in manifest.artifacts}
    assert by_name["tool-linux-amd64.tar.gz"].signed is True
    assert by_name["tool-darwin-arm64.tar.gz"].signed is False
    assert by_name["tool-darwin-arm64.tar.gz"].sbom_path is not None
    assert [issue.stage for issue in manifest.issues] == ["sign"]
    assert manifest.release_failed is True
    assert [event["event"] for event in events] == ["release_issue", "release_consolidated"]


def test_sbom_failure_is_per_artifact(tmp_path: Path) -> None:
    signer = FakeSigner()
    consolidator = ArtifactConsolidator(
        tmp_path / "dist", signer=signer, sbom=FakeSbom(fail_on="linux")
    )

    manifest = asyncio.run(consolidator.consolidate("example/tool", "v1.2.0", _targets(tmp_path)))

    by_name = {artifact.path.name: artifact for artifact in manifest.artifacts}
    assert sorted(by_name) == ["tool-darwin-arm64.tar.gz", "tool-linux-amd64.tar.gz"]
    assert all(artifact.signed for artifact in manifest.artifacts)
    assert by_name["tool-linux-amd64.tar.gz"].sbom_path is None
    assert by_name["tool-darwin-arm64.tar.gz"].sbom_path is not None
    assert [(issue.stage, issue.name) for issue in manifest.issues] == [
        ("sbom", "tool-linux-amd64.tar.gz")
    ]
    assert manifest.release_failed is True


def test_missing_signer_binary_aborts_release(tmp_path: Path) -> None:
    signer = FakeSigner(error=DependencyError("minisign not found", collaborator="minisign"))
    consolidator = ArtifactConsolidator(tmp_path / "dist", signer=signer)

    with pytest.raises(DependencyError):
        asyncio.run(consolidator.consolidate("example/tool", "v1.2.0", _targets(tmp_path)))


def test_shell_template_maps_placeholders() -> None:
    assert shell_template("{name}-{version}-{target}.{ext}") == (
        "${NAME}-${VERSION_NUM}-${OS}-${ARCH}.${EXT}"
    )


def test_render_installer_uses_detected_convention() -> None:
    pattern = extract_pattern('TAR="tool-${TARGET}.tar.gz"\n')

    script = render_installer("example/tool", "tool", pattern, version="v1.2.0")

    assert script.startswith("#!/bin/sh\n")
    assert 'REPO="example/tool"' in script
    assert 'VERSION="${VERSION:-v1.2.0}"' in script
    assert 'ASSET="tool-${OS}-${ARCH}.tar.gz"' in script
    assert '"$BASE_URL/SHA256SUMS"' in script
    assert "__ASSET__" not in script
    assert "__REPO__" not in script


def test_render_installer_refuses_without_convention() -> None:
    with pytest.raises(ReleaseFailed):
        render_installer("example/tool", "tool", no_pattern())


def test_render_installer_rejects_unsafe_values() -> None:
    pattern = extract_pattern('TAR="tool-${TARGET}.tar.gz"\n')

    with pytest.raises(ReleaseFailed):
        render_installer("example/tool", "tool; rm -rf /", pattern)


def test_write_installer_is_executable(tmp_path: Path) -> None:
    path = write_installer(tmp_path / "out" / "install.sh", "#!/bin/sh\n")

    assert path.read_text(encoding="utf-8") == "#!/bin/sh\n"
    assert path.stat().st_mode & stat.S_IXUSR
