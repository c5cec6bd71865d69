from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from shipyard.collaborators.base import NativeRemote, OutputHook, ProcessResult, QueueTimeSource
from shipyard.errors import CollaboratorError, NetworkError

EventHook = Callable[[dict[str, Any]], None]
T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 0.5
    timeout_seconds: float = 30.0


async def call_with_retries(
    call_name: str,
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    event_hook: EventHook | None = None,
    context: dict[str, Any] | None = None,
) -> T:
    """Retry transient collaborator failures with exponential backoff.

    Non-retriable errors (authentication, missing binaries) are re-raised untouched on
    the first occurrence.
    """

    def _emit(event: dict[str, Any]) -> None:
        if event_hook:
            event_hook({**event, **(context or {})})

    errors: list[str] = []
    for attempt in range(policy.max_retries + 1):
        if attempt > 0:
            delay = policy.backoff_seconds * (2 ** (attempt - 1))
            _emit(
                {
                    "event": "collaborator_retry",
                    "call": call_name,
                    "attempt": attempt,
                    "delay_seconds": delay,
                }
            )
            await asyncio.sleep(delay)
        try:
            return await asyncio.wait_for(call(), timeout=policy.timeout_seconds)
        except TimeoutError:
            error: CollaboratorError = NetworkError(
                f"{call_name} timed out after {policy.timeout_seconds:.1f}s"
            )
        except CollaboratorError as exc:
            if not exc.retriable:
                _emit(
                    {
                        "event": "collaborator_attempt_failed",
                        "call": call_name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": False,
                    }
                )
                raise
            error = exc
        errors.append(f"[{attempt}] {error}")
        _emit(
            {
                "event": "collaborator_attempt_failed",
                "call": call_name,
                "attempt": attempt,
                "error": str(error),
                "retriable": True,
            }
        )

    summary = "; ".join(errors[-4:])
    raise NetworkError(f"All attempts failed for {call_name}. {summary}", retriable=False)


class ResilientQueueTimeSource(QueueTimeSource):
    def __init__(
        self,
        inner: QueueTimeSource,
        policy: RetryPolicy,
        event_hook: EventHook | None = None,
    ) -> None:
        self.inner = inner
        self.policy = policy
        self.event_hook = event_hook
        self.binaries = inner.binaries

    async def get_queue_time(self, repo: str, workflow: str) -> float:
        return await call_with_retries(
            "get_queue_time",
            lambda: self.inner.get_queue_time(repo, workflow),
            self.policy,
            event_hook=self.event_hook,
            context={"repo": repo},
        )


class ResilientNativeRemote(NativeRemote):
    """Retries file transfers; build commands run exactly once."""

    def __init__(
        self,
        inner: NativeRemote,
        policy: RetryPolicy,
        event_hook: EventHook | None = None,
    ) -> None:
        self.inner = inner
        self.policy = policy
        self.event_hook = event_hook
        self.binaries = inner.binaries

    async def execute(
        self,
        host: str,
        command: str,
        *,
        on_output: OutputHook | None = None,
    ) -> ProcessResult:
        return await self.inner.execute(host, command, on_output=on_output)

    async def fetch_file(self, host: str, remote_path: str, local_dir: Path) -> Path:
        return await call_with_retries(
            "fetch_file",
            lambda: self.inner.fetch_file(host, remote_path, local_dir),
            self.policy,
            event_hook=self.event_hook,
            context={"host": host, "remote_path": remote_path},
        )
