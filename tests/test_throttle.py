import asyncio

import pytest

from shipyard.collaborators.base import QueueTimeSource
from shipyard.errors import CollaboratorAuthError, NetworkError
from shipyard.throttle import ThrottleDetector


class FakeQueue(QueueTimeSource):
    def __init__(self, times: dict[str, float], errors: dict[str, Exception] | None = None):
        self.times = times
        self.errors = errors or {}
        self.calls: list[tuple[str, str]] = []

    async def get_queue_time(self, repo: str, workflow: str) -> float:
        self.calls.append((repo, workflow))
        await asyncio.sleep(0)
        if repo in self.errors:
            raise self.errors[repo]
        return self.times[repo]


def test_check_classifies_by_threshold() -> None:
    source = FakeQueue({"o/slow": 900.0, "o/fast": 30.0, "o/edge": 600.0})
    detector = ThrottleDetector(source)

    report = asyncio.run(detector.check(["o/slow", "o/fast", "o/edge"], 600.0))

    assert [item.repo for item in report.throttled] == ["o/edge", "o/slow"]
    assert [item.repo for item in report.healthy] == ["o/fast"]
    assert report.is_throttled("o/slow") is True
    assert report.is_throttled("o/fast") is False


def test_duplicate_repos_are_checked_once() -> None:
    source = FakeQueue({"o/tool": 10.0})

    asyncio.run(ThrottleDetector(source).check(["o/tool", "o/tool"], 600.0))

    assert source.calls == [("o/tool", "release.yml")]


def test_per_repo_workflow_override() -> None:
    source = FakeQueue({"o/a": 1.0, "o/b": 1.0})
    detector = ThrottleDetector(source, workflow="ci.yml")

    asyncio.run(detector.check(["o/a", "o/b"], 600.0, workflows={"o/b": "dist.yml"}))

    assert sorted(source.calls) == [("o/a", "ci.yml"), ("o/b", "dist.yml")]


def test_fetch_failure_is_reported_per_repo() -> None:
    events: list[dict] = []
    source = FakeQueue({"o/ok": 700.0}, errors={"o/down": NetworkError("timeout")})
    detector = ThrottleDetector(source, event_hook=events.append)

    report = asyncio.run(detector.check(["o/ok", "o/down"], 600.0))

    assert [item.repo for item in report.throttled] == ["o/ok"]
    assert [item.repo for item in report.errors] == ["o/down"]
    assert report.errors[0].queue_seconds is None
    assert {event["event"] for event in events} == {"queue_checked", "queue_check_failed"}
    assert report.to_dict()["errors"][0]["error"] == "timeout"


def test_auth_failure_aborts_the_check() -> None:
    source = FakeQueue({"o/a": 1.0}, errors={"o/b": CollaboratorAuthError("gh auth login")})

    with pytest.raises(CollaboratorAuthError):
        asyncio.run(ThrottleDetector(source).check(["o/a", "o/b"], 600.0))
