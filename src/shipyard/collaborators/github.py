from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime

from shipyard.collaborators.base import QueueTimeSource
from shipyard.collaborators.process import run_process
from shipyard.errors import CollaboratorAuthError, NetworkError

AUTH_MARKERS = (
    "gh auth login",
    "authentication required",
    "bad credentials",
    "http 401",
    "http 403",
    "not logged into",
)
PENDING_STATES = {"queued", "waiting", "pending", "requested"}


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    # GitHub reports unstarted runs with the zero timestamp.
    if parsed.year <= 1:
        return None
    return parsed


def queue_seconds(run: dict[str, object], now: datetime) -> float:
    created = _parse_timestamp(run.get("createdAt"))
    if created is None:
        return 0.0
    started = _parse_timestamp(run.get("startedAt"))
    status = str(run.get("status") or "").lower()
    if status in PENDING_STATES or started is None or started < created:
        return max(0.0, (now - created).total_seconds())
    return max(0.0, (started - created).total_seconds())


class GhQueueTimeSource(QueueTimeSource):
    """Reads queue times through the ``gh`` command line client."""

    binaries = ("gh",)

    def __init__(
        self,
        binary: str = "gh",
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.binary = binary
        self.now = now or (lambda: datetime.now(UTC))

    def build_command(self, repo: str, workflow: str) -> list[str]:
        return [
            self.binary,
            "run",
            "list",
            "--repo",
            repo,
            "--workflow",
            workflow,
            "--limit",
            "1",
            "--json",
            "databaseId,status,createdAt,startedAt,updatedAt",
        ]

    async def get_queue_time(self, repo: str, workflow: str) -> float:
        result = await run_process(self.build_command(repo, workflow), collaborator="gh")
        if result.exit_code != 0:
            stderr = result.stderr.strip()
            if any(marker in stderr.lower() for marker in AUTH_MARKERS):
                raise CollaboratorAuthError(
                    f"gh is not authenticated: {stderr[:200]}", collaborator="gh"
                )
            raise NetworkError(
                f"gh run list failed for {repo} with exit code {result.exit_code}: "
                f"{stderr[:200]}",
                collaborator="gh",
                exit_code=result.exit_code,
            )
        try:
            runs = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise NetworkError(
                f"gh returned malformed JSON for {repo}.", collaborator="gh"
            ) from exc
        if not isinstance(runs, list) or not runs or not isinstance(runs[0], dict):
            return 0.0
        return queue_seconds(runs[0], self.now())
