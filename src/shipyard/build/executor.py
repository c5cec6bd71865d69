from __future__ import annotations

import asyncio
import shlex
import time
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from shipyard.build.router import ExecutionPlan
from shipyard.collaborators.base import ContainerReplay, NativeRemote
from shipyard.collaborators.ssh import SSH_CONNECTION_FAILURE
from shipyard.errors import CollaboratorError, DependencyError
from shipyard.models import (
    CONTAINER_REPLAY,
    Artifact,
    BuildTarget,
    TargetStatus,
    split_platform,
)
from shipyard.release.naming import default_extension, substitute
from shipyard.state.store import safe_name

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class BuildRequest:
    """What to build for one run, independent of where each target runs."""

    version: str
    workflow_file: Path
    artifact_dir: Path
    log_dir: Path | None = None
    workdir: Path | None = None
    binary_name: str = ""
    remote_workdir: str = ""
    build_cmd: str = ""
    artifact_path: str = ""


@dataclass(slots=True)
class _Outcome:
    status: TargetStatus
    cause: str | None = None
    detail: str = ""
    exit_code: int | None = None
    paths: list[Path] = field(default_factory=list)


def _quote(value: str, *, windows: bool) -> str:
    if not windows:
        if value.startswith("~/"):
            return "~/" + shlex.quote(value[2:])
        return shlex.quote(value)
    return f'"{value}"' if any(char.isspace() for char in value) else value


def native_build_command(request: BuildRequest, *, windows: bool = False) -> str:
    parts = [
        f"cd {_quote(request.remote_workdir, windows=windows)}",
        "git fetch --tags --force",
        f"git checkout {_quote(request.version, windows=windows)}",
        request.build_cmd,
    ]
    return " && ".join(parts)


def _is_absolute_remote(path: str) -> bool:
    return path.startswith(("/", "~")) or (len(path) > 2 and path[1] == ":")


class BuildExecutor:
    """Runs an execution plan, honoring dependencies and per-strategy limits.

    A target starts only once every dependency has succeeded; a failed or skipped
    dependency skips everything downstream of it. Cancelling the ``execute`` call
    interrupts running targets, skips pending ones and re-raises.
    """

    def __init__(
        self,
        container: ContainerReplay,
        native: NativeRemote,
        *,
        target_timeout_seconds: float = 3600.0,
        container_concurrency: int = 2,
        native_concurrency: int = 1,
        event_hook: EventHook | None = None,
    ) -> None:
        self.container = container
        self.native = native
        self.target_timeout_seconds = target_timeout_seconds
        self.container_limit = asyncio.Semaphore(max(1, container_concurrency))
        self.native_concurrency = max(1, native_concurrency)
        self._host_limits: dict[str, asyncio.Semaphore] = {}
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _limit_for(self, target: BuildTarget) -> asyncio.Semaphore:
        if target.strategy == CONTAINER_REPLAY:
            return self.container_limit
        if target.host not in self._host_limits:
            self._host_limits[target.host] = asyncio.Semaphore(self.native_concurrency)
        return self._host_limits[target.host]

    @staticmethod
    def _skip_blocked(targets: dict[str, BuildTarget], scheduled: set[str]) -> None:
        for target in targets.values():
            if target.status != "pending" or target.job in scheduled:
                continue
            blocked = [
                dep
                for dep in target.depends_on
                if dep not in targets or targets[dep].status in {"failed", "skipped"}
            ]
            if blocked:
                target.detail = f"blocked by {', '.join(blocked)}"
                target.transition("skipped", cause="dependency_failed")

    @staticmethod
    def _ready(targets: dict[str, BuildTarget], scheduled: set[str]) -> list[BuildTarget]:
        return [
            target
            for target in targets.values()
            if target.status == "pending"
            and target.job not in scheduled
            and all(targets[dep].status == "success" for dep in target.depends_on)
        ]

    def _remote_paths(self, target: BuildTarget, request: BuildRequest) -> list[str]:
        os_name, arch = split_platform(target.platform)
        if request.artifact_path:
            templates = [request.artifact_path]
        else:
            templates = list(target.outputs)
        paths: list[str] = []
        for template in templates:
            rendered = substitute(
                template,
                name=request.binary_name or target.job,
                version=request.version,
                os=os_name,
                arch=arch,
                ext=default_extension(os_name),
            )
            if request.remote_workdir and not _is_absolute_remote(rendered):
                rendered = f"{request.remote_workdir.rstrip('/')}/{rendered}"
            paths.append(rendered)
        return paths

    @staticmethod
    def _local_outputs(target: BuildTarget, request: BuildRequest) -> list[Path]:
        if request.workdir is None:
            return []
        found: list[Path] = []
        for pattern in target.outputs:
            found.extend(path for path in sorted(request.workdir.glob(pattern)) if path.is_file())
        return found

    async def _replay(
        self, target: BuildTarget, request: BuildRequest, on_output: Callable[[str, str], None]
    ) -> _Outcome:
        result = await self.container.run(
            request.workflow_file, target.job, workdir=request.workdir, on_output=on_output
        )
        if result.exit_code != 0:
            return _Outcome(
                "failed",
                "exit_code",
                f"act exited with code {result.exit_code}",
                exit_code=result.exit_code,
            )
        paths = list(result.artifact_paths) or self._local_outputs(target, request)
        return _Outcome("success", exit_code=0, paths=paths)

    async def _native(
        self, target: BuildTarget, request: BuildRequest, on_output: Callable[[str, str], None]
    ) -> _Outcome:
        if not request.build_cmd or not request.remote_workdir:
            return _Outcome(
                "failed",
                "not_configured",
                "native builds need both remote_workdir and build_cmd",
            )
        windows = target.platform.startswith("windows")
        result = await self.native.execute(
            target.host, native_build_command(request, windows=windows), on_output=on_output
        )
        if result.exit_code == SSH_CONNECTION_FAILURE:
            return _Outcome(
                "failed",
                "remote_unreachable",
                f"could not reach {target.host}: {result.stderr.strip()[:200]}",
                exit_code=result.exit_code,
            )
        if result.exit_code != 0:
            return _Outcome(
                "failed",
                "exit_code",
                f"build on {target.host} exited with code {result.exit_code}",
                exit_code=result.exit_code,
            )

        local_dir = request.artifact_dir / safe_name(target.job)
        paths: list[Path] = []
        for remote_path in self._remote_paths(target, request):
            try:
                paths.append(await self.native.fetch_file(target.host, remote_path, local_dir))
            except DependencyError:
                raise
            except CollaboratorError as exc:
                return _Outcome("failed", "missing_artifact", str(exc), exit_code=0)
        return _Outcome("success", exit_code=0, paths=paths)

    async def _dispatch(
        self, target: BuildTarget, request: BuildRequest, on_output: Callable[[str, str], None]
    ) -> _Outcome:
        if target.strategy == CONTAINER_REPLAY:
            return await self._replay(target, request, on_output)
        return await self._native(target, request, on_output)

    @staticmethod
    def _finish(
        target: BuildTarget, outcome: _Outcome, started: float, *, expected: bool = False
    ) -> None:
        if outcome.status == "success":
            existing = [path for path in outcome.paths if path.is_file()]
            if expected and not existing:
                outcome = _Outcome(
                    "failed",
                    "missing_artifact",
                    "process succeeded but produced none of its declared outputs",
                    exit_code=outcome.exit_code,
                )
            else:
                target.artifacts = [Artifact.from_file(target.platform, path) for path in existing]
        target.exit_code = outcome.exit_code
        target.detail = outcome.detail
        target.duration_seconds = round(time.monotonic() - started, 3)
        target.transition(outcome.status, cause=outcome.cause)

    async def _run_target(self, target: BuildTarget, request: BuildRequest) -> None:
        async with self._limit_for(target):
            target.transition("running")
            started = time.monotonic()
            expected = bool(target.outputs) or (
                target.strategy != CONTAINER_REPLAY and bool(request.artifact_path)
            )
            self._emit(
                {
                    "event": "target_started",
                    "job": target.job,
                    "platform": target.platform,
                    "strategy": target.strategy,
                    "host": target.host,
                }
            )
            with ExitStack() as stack:
                log: TextIO | None = None
                if request.log_dir is not None:
                    request.log_dir.mkdir(parents=True, exist_ok=True)
                    log_path = request.log_dir / f"{safe_name(target.job)}.log"
                    log = stack.enter_context(log_path.open("a", encoding="utf-8"))

                def on_output(stream: str, line: str) -> None:
                    if log is not None:
                        log.write(f"[{stream}] {line}\n")
                    self._emit(
                        {
                            "event": "target_output",
                            "job": target.job,
                            "stream": stream,
                            "line": line,
                        }
                    )

                try:
                    outcome = await asyncio.wait_for(
                        self._dispatch(target, request, on_output),
                        timeout=self.target_timeout_seconds,
                    )
                except TimeoutError:
                    outcome = _Outcome(
                        "failed",
                        "timeout",
                        f"exceeded {self.target_timeout_seconds:.0f}s target timeout",
                    )
                except DependencyError as exc:
                    self._finish(target, _Outcome("failed", "dependency_error", str(exc)), started)
                    raise
                except CollaboratorError as exc:
                    outcome = _Outcome("failed", "collaborator_error", str(exc))
                except (OSError, ValueError) as exc:
                    outcome = _Outcome(
                        "failed", "collaborator_error", f"{type(exc).__name__}: {exc}"
                    )
                except asyncio.CancelledError:
                    interrupted = _Outcome("failed", "interrupted", "run cancelled")
                    self._finish(target, interrupted, started)
                    raise
                self._finish(target, outcome, started, expected=expected)

        self._emit(
            {
                "event": "target_finished",
                "job": target.job,
                "status": target.status,
                "cause": target.cause,
                "duration_seconds": target.duration_seconds,
                "artifacts": [str(artifact.path) for artifact in target.artifacts],
            }
        )

    async def execute(self, plan: ExecutionPlan, request: BuildRequest) -> list[BuildTarget]:
        targets = {target.job: target for target in plan.all_targets}
        scheduled: set[str] = set()
        running: dict[asyncio.Task[None], BuildTarget] = {}
        request.artifact_dir.mkdir(parents=True, exist_ok=True)
        try:
            while True:
                self._skip_blocked(targets, scheduled)
                for target in self._ready(targets, scheduled):
                    scheduled.add(target.job)
                    task = asyncio.create_task(self._run_target(target, request))
                    running[task] = target
                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    task.result()
        except BaseException:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            for target in targets.values():
                if target.status == "pending":
                    target.transition("skipped", cause="interrupted")
            raise
        return list(targets.values())
