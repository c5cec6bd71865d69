from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from shipyard.collaborators.base import QueueTimeSource
from shipyard.errors import CollaboratorError, DependencyError

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RepoQueueStatus:
    repo: str
    queue_seconds: float | None
    throttled: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "queue_seconds": self.queue_seconds,
            "throttled": self.throttled,
            "error": self.error,
        }


@dataclass(slots=True)
class ThrottleReport:
    threshold_seconds: float
    throttled: list[RepoQueueStatus] = field(default_factory=list)
    healthy: list[RepoQueueStatus] = field(default_factory=list)
    errors: list[RepoQueueStatus] = field(default_factory=list)

    def is_throttled(self, repo: str) -> bool:
        return any(item.repo == repo for item in self.throttled)

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold_seconds": self.threshold_seconds,
            "throttled": [item.to_dict() for item in self.throttled],
            "healthy": [item.to_dict() for item in self.healthy],
            "errors": [item.to_dict() for item in self.errors],
        }


class ThrottleDetector:
    def __init__(
        self,
        source: QueueTimeSource,
        *,
        workflow: str = "release.yml",
        max_concurrency: int = 8,
        event_hook: EventHook | None = None,
    ) -> None:
        self.source = source
        self.workflow = workflow
        self.max_concurrency = max(1, max_concurrency)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _check_one(
        self,
        repo: str,
        threshold: float,
        semaphore: asyncio.Semaphore,
        workflows: dict[str, str],
    ) -> RepoQueueStatus:
        async with semaphore:
            try:
                seconds = await self.source.get_queue_time(
                    repo, workflows.get(repo, self.workflow)
                )
            except DependencyError:
                raise
            except CollaboratorError as exc:
                self._emit({"event": "queue_check_failed", "repo": repo, "error": str(exc)})
                return RepoQueueStatus(repo=repo, queue_seconds=None, error=str(exc))
        throttled = seconds >= threshold
        self._emit(
            {
                "event": "queue_checked",
                "repo": repo,
                "queue_seconds": seconds,
                "throttled": throttled,
            }
        )
        return RepoQueueStatus(repo=repo, queue_seconds=seconds, throttled=throttled)

    async def check(
        self,
        repos: list[str],
        threshold: float,
        *,
        workflows: dict[str, str] | None = None,
    ) -> ThrottleReport:
        """Classify each repository as throttled or healthy.

        A failed fetch for one repository is reported against that repository only;
        authentication or missing-tool failures abort the whole check.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        unique_repos = sorted(set(repos))
        tasks = [
            asyncio.create_task(self._check_one(repo, threshold, semaphore, workflows or {}))
            for repo in unique_repos
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        report = ThrottleReport(threshold_seconds=threshold)
        for status in sorted(results, key=lambda item: item.repo):
            if status.error is not None:
                report.errors.append(status)
            elif status.throttled:
                report.throttled.append(status)
            else:
                report.healthy.append(status)
        return report
