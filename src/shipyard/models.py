from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from shipyard.errors import InvalidTransition

Strategy = Literal["container-replay", "native-remote"]
TargetStatus = Literal["pending", "running", "success", "failed", "skipped"]
RunStatus = Literal["running", "success", "partial", "error"]

CONTAINER_REPLAY: Strategy = "container-replay"
NATIVE_REMOTE: Strategy = "native-remote"

TERMINAL_TARGET_STATUSES = {"success", "failed", "skipped"}

_ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "skipped"},
    "running": {"success", "failed"},
    "success": set(),
    "failed": set(),
    "skipped": set(),
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def utcnow_iso() -> str:
    return utcnow().replace(microsecond=0).isoformat()


def new_run_id() -> str:
    return f"run-{utcnow().strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def split_platform(platform: str) -> tuple[str, str]:
    os_name, _, arch = platform.partition("/")
    return os_name, arch or "amd64"


@dataclass(slots=True)
class Artifact:
    platform: str
    path: Path
    size: int = 0
    sha256: str | None = None
    signed: bool = False
    signature_path: Path | None = None
    sbom_path: Path | None = None

    @classmethod
    def from_file(cls, platform: str, path: Path) -> Artifact:
        return cls(platform=platform, path=path, size=path.stat().st_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "path": str(self.path),
            "size": self.size,
            "sha256": self.sha256,
            "signed": self.signed,
            "signature_path": str(self.signature_path) if self.signature_path else None,
            "sbom_path": str(self.sbom_path) if self.sbom_path else None,
        }


@dataclass(slots=True)
class BuildTarget:
    job: str
    platform: str
    strategy: Strategy | None
    host: str
    runs_on: str = ""
    depends_on: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    status: TargetStatus = "pending"
    cause: str | None = None
    detail: str = ""
    exit_code: int | None = None
    artifacts: list[Artifact] = field(default_factory=list)
    started_at: str | None = None
    ended_at: str | None = None
    duration_seconds: float | None = None

    @property
    def artifact(self) -> Artifact | None:
        return self.artifacts[0] if self.artifacts else None

    def transition(self, status: TargetStatus, *, cause: str | None = None) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Target '{self.job}' cannot move from {self.status} to {status}."
            )
        self.status = status
        if cause:
            self.cause = cause
        if status == "running":
            self.started_at = utcnow_iso()
        elif status in TERMINAL_TARGET_STATUSES:
            self.ended_at = utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "platform": self.platform,
            "strategy": self.strategy,
            "host": self.host,
            "runs_on": self.runs_on,
            "depends_on": list(self.depends_on),
            "status": self.status,
            "cause": self.cause,
            "detail": self.detail,
            "exit_code": self.exit_code,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(slots=True)
class Run:
    repo: str
    version: str
    platforms: list[str] = field(default_factory=list)
    run_id: str = field(default_factory=new_run_id)
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    status: RunStatus = "running"
    exit_code: int | None = None
    targets: list[BuildTarget] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "repo": self.repo,
            "version": self.version,
            "platforms": list(self.platforms),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "status": self.status,
            "exit_code": self.exit_code,
            "targets": {target.job: target.status for target in self.targets},
            "errors": list(self.errors),
        }


def derive_run_status(targets: list[BuildTarget], *, release_failed: bool = False) -> RunStatus:
    attempted = [target for target in targets if target.started_at is not None]
    if not attempted:
        return "error"
    succeeded = [target for target in targets if target.status == "success"]
    if not succeeded:
        return "error"
    if len(succeeded) == len(targets) and not release_failed:
        return "success"
    return "partial"
