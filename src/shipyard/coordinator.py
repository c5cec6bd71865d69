from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shipyard import __version__
from shipyard.build.executor import BuildExecutor, BuildRequest
from shipyard.build.router import BuildRouter, ExecutionPlan
from shipyard.build.workflow import load_workflow
from shipyard.collaborators.base import (
    ContainerReplay,
    NativeRemote,
    QueueTimeSource,
    SbomGenerator,
    Signer,
)
from shipyard.config import RepoConfig, ShipyardConfig
from shipyard.errors import (
    EXIT_BUILD_FAILED,
    EXIT_CONFLICT,
    EXIT_INTERRUPTED,
    EXIT_NETWORK,
    EXIT_PARTIAL,
    EXIT_RELEASE_FAILED,
    EXIT_SUCCESS,
    DependencyError,
    LockConflict,
    NetworkError,
    NotThrottled,
    ReleaseFailed,
    RoutingError,
    ShipyardError,
)
from shipyard.models import (
    CONTAINER_REPLAY,
    NATIVE_REMOTE,
    Run,
    RunStatus,
    derive_run_status,
    utcnow_iso,
)
from shipyard.release.consolidator import ArtifactConsolidator, ReleaseManifest
from shipyard.release.installer import render_installer, write_installer
from shipyard.release.naming import PatternExtractor
from shipyard.state.locks import LockHandle, LockManager
from shipyard.throttle import ThrottleDetector, ThrottleReport

EventHook = Callable[[dict[str, Any]], None]

TOOL_NAME = "shipyard"


@dataclass(slots=True)
class Collaborators:
    queue: QueueTimeSource
    container: ContainerReplay
    native: NativeRemote
    signer: Signer | None = None
    sbom: SbomGenerator | None = None


@dataclass(slots=True)
class FallbackRequest:
    repo: str
    version: str
    platforms: list[str] = field(default_factory=list)
    skip_checks: bool = False
    build_only: bool = False
    dry_run: bool = False


def make_envelope(
    command: str,
    *,
    status: str,
    exit_code: int,
    started_at: str,
    started_monotonic: float,
    details: dict[str, Any],
    run_id: str | None = None,
) -> dict[str, Any]:
    return {
        "command": command,
        "status": status,
        "exit_code": exit_code,
        "run_id": run_id,
        "tool": TOOL_NAME,
        "version": __version__,
        "started_at": started_at,
        "ended_at": utcnow_iso(),
        "duration_ms": int((time.monotonic() - started_monotonic) * 1000),
        "details": details,
    }


def exit_code_for(status: RunStatus, *, release_failed: bool, builds_clean: bool) -> int:
    if status == "success":
        return EXIT_SUCCESS
    if status == "partial":
        return EXIT_RELEASE_FAILED if release_failed and builds_clean else EXIT_PARTIAL
    return EXIT_BUILD_FAILED


class RunCoordinator:
    """Drives ``check -> build -> release`` for one repository at a time.

    The repository lock is held for the whole run and released on every exit path,
    including cancellation and run timeouts.
    """

    def __init__(
        self,
        config: ShipyardConfig,
        collaborators: Collaborators,
        locks: LockManager,
        *,
        event_hook: EventHook | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.config = config
        self.collaborators = collaborators
        self.locks = locks
        self.event_hook = event_hook
        self.which = which
        self.router = BuildRouter(config.routing.rules, config.hosts.as_mapping())
        self.last_report: dict[str, Any] | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    # Throttle detection

    def _detector(self) -> ThrottleDetector:
        return ThrottleDetector(
            self.collaborators.queue,
            workflow=self.config.throttle.workflow,
            max_concurrency=self.config.throttle.max_concurrency,
            event_hook=self.event_hook,
        )

    def _workflow_names(self, repos: list[str]) -> dict[str, str]:
        names: dict[str, str] = {}
        for name in repos:
            repo = self.config.repos.get(name)
            if repo is not None and repo.workflow:
                names[self.config.github_name(name)] = Path(repo.workflow).name
        return names

    async def check(self, repos: list[str], threshold: float | None = None) -> dict[str, Any]:
        started_at = utcnow_iso()
        started = time.monotonic()
        limit = self.config.throttle.threshold_seconds if threshold is None else threshold
        github_repos = [self.config.github_name(name) for name in repos]
        try:
            self.preflight(self.collaborators.queue.binaries)
            report = await self._detector().check(
                github_repos, limit, workflows=self._workflow_names(repos)
            )
        except DependencyError as exc:
            return make_envelope(
                "check",
                status="error",
                exit_code=exc.exit_code,
                started_at=started_at,
                started_monotonic=started,
                details={"repos": github_repos, "errors": [str(exc)]},
            )

        checked = len(report.throttled) + len(report.healthy)
        if not report.errors:
            status, exit_code = "success", EXIT_SUCCESS
        elif checked:
            status, exit_code = "partial", EXIT_PARTIAL
        else:
            status, exit_code = "error", EXIT_NETWORK
        return make_envelope(
            "check",
            status=status,
            exit_code=exit_code,
            started_at=started_at,
            started_monotonic=started,
            details=report.to_dict(),
        )

    # Planning

    def plan(self, repo: str, platforms: list[str] | None = None) -> ExecutionPlan:
        repo_config = self.config.repo(repo)
        workflow = load_workflow(repo_config.workflow_file(self.config.throttle.workflow))
        return self.router.plan(workflow, platforms=platforms or list(repo_config.targets))

    def required_binaries(self, plan: ExecutionPlan, *, release: bool) -> list[str]:
        binaries: list[str] = []
        strategies = plan.strategies()
        if CONTAINER_REPLAY in strategies:
            binaries.extend(self.collaborators.container.binaries)
        if NATIVE_REMOTE in strategies:
            binaries.extend(self.collaborators.native.binaries)
        if release and self.config.release.sign and self.collaborators.signer is not None:
            binaries.extend(self.collaborators.signer.binaries)
        if release and self.config.release.sbom and self.collaborators.sbom is not None:
            binaries.extend(self.collaborators.sbom.binaries)
        return list(dict.fromkeys(binaries))

    def preflight(self, binaries: tuple[str, ...] | list[str]) -> list[dict[str, Any]]:
        checks = [
            {"type": "command", "name": binary, "ok": self.which(binary) is not None}
            for binary in binaries
        ]
        missing = [item["name"] for item in checks if not item["ok"]]
        self._emit({"event": "preflight", "checks": checks})
        if missing:
            raise DependencyError(
                "Required tools not found in PATH: " + ", ".join(missing),
                collaborator="preflight",
            )
        return checks

    # Fallback runs

    async def _heartbeat(self, handle: LockHandle, run: Run, drive: asyncio.Task[Any]) -> None:
        interval = max(0.01, float(self.config.state.heartbeat_interval_seconds))
        while not drive.done():
            await asyncio.sleep(interval)
            try:
                self.locks.heartbeat(handle)
            except LockConflict as exc:
                run.errors.append(f"Lost repository lock: {exc}")
                self._emit({"event": "lock_lost", "repo": run.repo, "run_id": run.run_id})
                drive.cancel()
                return

    async def _throttle_gate(self, repo_name: str, details: dict[str, Any]) -> None:
        github = self.config.github_name(repo_name)
        self.preflight(self.collaborators.queue.binaries)
        report: ThrottleReport = await self._detector().check(
            [github],
            self.config.throttle.threshold_seconds,
            workflows=self._workflow_names([repo_name]),
        )
        details["throttle"] = report.to_dict()
        if report.errors:
            raise NetworkError(
                f"Could not determine queue time for {github}: {report.errors[0].error}",
                retriable=False,
            )
        if not report.is_throttled(github):
            raise NotThrottled(
                f"{github} is not throttled (threshold {report.threshold_seconds:.0f}s); "
                "use --skip-checks to build anyway."
            )

    def _build_request(self, run: Run, repo: RepoConfig) -> BuildRequest:
        work_root = self.config.state.work_path()
        return BuildRequest(
            version=run.version,
            workflow_file=repo.workflow_file(self.config.throttle.workflow),
            artifact_dir=work_root / "artifacts" / run.run_id,
            log_dir=work_root / "logs" / run.run_id,
            workdir=Path(repo.local_path).expanduser() if repo.local_path else None,
            binary_name=repo.binary_name,
            remote_workdir=repo.remote_workdir,
            build_cmd=repo.build_cmd,
            artifact_path=repo.artifact_path,
        )

    async def _release(
        self, run: Run, repo: RepoConfig, details: dict[str, Any]
    ) -> ReleaseManifest:
        output_dir = Path(self.config.release.output_dir).expanduser() / run.repo / run.version
        pattern = None
        installer_source = repo.installer_file()
        if installer_source is not None:
            pattern = PatternExtractor().extract_file(installer_source)
            details["naming"] = pattern.to_dict()

        consolidator = ArtifactConsolidator(
            output_dir,
            signer=self.collaborators.signer if self.config.release.sign else None,
            sbom=self.collaborators.sbom if self.config.release.sbom else None,
            binary_name=repo.binary_name,
            compat_template=pattern.template if pattern is not None else None,
            event_hook=self.event_hook,
        )
        manifest = await consolidator.consolidate(run.repo, run.version, run.targets)

        if pattern is not None and repo.github and repo.binary_name:
            try:
                script = render_installer(
                    repo.github, repo.binary_name, pattern, version=run.version
                )
            except ReleaseFailed as exc:
                run.errors.append(str(exc))
                details["release_failed"] = True
            else:
                manifest.installer_path = write_installer(output_dir / "install.sh", script)
                consolidator.write_manifest(manifest)
        return manifest

    async def _drive(self, run: Run, request: FallbackRequest, details: dict[str, Any]) -> None:
        repo = self.config.repo(request.repo)
        if not request.skip_checks:
            await self._throttle_gate(request.repo, details)

        plan = self.plan(request.repo, request.platforms)
        details["plan"] = plan.to_dict()
        run.targets = plan.all_targets
        for platform in plan.missing_platforms:
            run.errors.append(f"No workflow job builds requested platform {platform}.")
        if not plan.targets:
            raise RoutingError(f"Nothing routable to build for {request.repo}.")
        self.locks.record_run(run)

        release = not request.build_only
        details["preflight"] = self.preflight(self.required_binaries(plan, release=release))

        executor = BuildExecutor(
            self.collaborators.container,
            self.collaborators.native,
            target_timeout_seconds=self.config.executor.target_timeout_seconds,
            container_concurrency=self.config.executor.container_concurrency,
            native_concurrency=self.config.executor.native_concurrency,
            event_hook=self.event_hook,
        )
        await executor.execute(plan, self._build_request(run, repo))
        self.locks.record_run(run)

        if release and any(target.status == "success" for target in run.targets):
            manifest = await self._release(run, repo, details)
            details["release"] = manifest.to_dict()
            if manifest.release_failed:
                details["release_failed"] = True
                run.errors.extend(
                    f"{issue.stage} failed for {issue.name}: {issue.error}"
                    for issue in manifest.issues
                )

    def _finalize(self, run: Run, details: dict[str, Any], *, failure_exit: int | None) -> None:
        release_failed = bool(details.get("release_failed"))
        status = derive_run_status(run.targets, release_failed=release_failed)
        builds_clean = bool(run.targets) and all(t.status == "success" for t in run.targets)
        if failure_exit is not None:
            if status == "success":
                status = "partial"
            run.exit_code = failure_exit
        else:
            run.exit_code = exit_code_for(
                status, release_failed=release_failed, builds_clean=builds_clean
            )
        run.status = status
        run.ended_at = utcnow_iso()

    def _run_details(self, run: Run, details: dict[str, Any]) -> dict[str, Any]:
        return {
            "repo": run.repo,
            "version": run.version,
            "platforms": list(run.platforms),
            "targets": [target.to_dict() for target in run.targets],
            "artifacts": [
                artifact.to_dict() for target in run.targets for artifact in target.artifacts
            ],
            "errors": list(run.errors),
            **details,
        }

    async def _dry_run(self, request: FallbackRequest) -> dict[str, Any]:
        started_at = utcnow_iso()
        started = time.monotonic()
        details: dict[str, Any] = {"repo": request.repo, "version": request.version}
        details["dry_run"] = True
        try:
            plan = self.plan(request.repo, request.platforms)
        except RoutingError as exc:
            details["errors"] = [str(exc)]
            return make_envelope(
                "fallback",
                status="error",
                exit_code=exc.exit_code,
                started_at=started_at,
                started_monotonic=started,
                details=details,
            )
        details["plan"] = plan.to_dict()
        binaries = self.required_binaries(plan, release=not request.build_only)
        details["preflight"] = [
            {"type": "command", "name": binary, "ok": self.which(binary) is not None}
            for binary in binaries
        ]
        ok = bool(plan.targets)
        return make_envelope(
            "fallback",
            status="success" if ok else "error",
            exit_code=EXIT_SUCCESS if ok else RoutingError.exit_code,
            started_at=started_at,
            started_monotonic=started,
            details=details,
        )

    async def fallback(self, request: FallbackRequest) -> dict[str, Any]:
        """Run the full fallback pipeline and return the reporting envelope."""
        if request.dry_run:
            report = await self._dry_run(request)
            self.last_report = report
            return report

        self.config.repo(request.repo)
        run = Run(repo=request.repo, version=request.version, platforms=list(request.platforms))
        started = time.monotonic()
        details: dict[str, Any] = {}

        try:
            handle = self.locks.acquire(request.repo, run.run_id)
        except LockConflict as exc:
            run.errors.append(str(exc))
            run.status = "error"
            run.exit_code = EXIT_CONFLICT
            report = make_envelope(
                "fallback",
                status="error",
                exit_code=EXIT_CONFLICT,
                run_id=run.run_id,
                started_at=run.started_at,
                started_monotonic=started,
                details={**self._run_details(run, details), "holder_run_id": exc.holder_run_id},
            )
            self.last_report = report
            return report

        self._emit({"event": "run_started", "repo": run.repo, "run_id": run.run_id})
        failure_exit: int | None = None
        drive = asyncio.create_task(self._drive(run, request, details))
        heartbeat = asyncio.create_task(self._heartbeat(handle, run, drive))
        try:
            await asyncio.wait_for(drive, timeout=self.config.executor.run_timeout_seconds)
        except TimeoutError:
            run.errors.append(
                f"Run exceeded {self.config.executor.run_timeout_seconds:.0f}s and was cancelled."
            )
            failure_exit = EXIT_INTERRUPTED
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                run.errors.append("Run was interrupted.")
                failure_exit = EXIT_INTERRUPTED
                raise
            failure_exit = EXIT_CONFLICT
        except ShipyardError as exc:
            run.errors.append(str(exc))
            failure_exit = exc.exit_code
        finally:
            heartbeat.cancel()
            if not drive.done():
                drive.cancel()
            await asyncio.gather(heartbeat, drive, return_exceptions=True)
            if failure_exit is None and not drive.cancelled() and drive.exception() is not None:
                run.errors.append(f"Run failed unexpectedly: {drive.exception()}")
                failure_exit = EXIT_BUILD_FAILED
            self._finalize(run, details, failure_exit=failure_exit)
            try:
                self.locks.record_run(run)
            finally:
                self.locks.release(handle)
            self.last_report = make_envelope(
                "fallback",
                status=run.status,
                exit_code=run.exit_code if run.exit_code is not None else EXIT_BUILD_FAILED,
                run_id=run.run_id,
                started_at=run.started_at,
                started_monotonic=started,
                details=self._run_details(run, details),
            )
            self._emit(
                {
                    "event": "run_finished",
                    "repo": run.repo,
                    "run_id": run.run_id,
                    "status": run.status,
                    "exit_code": run.exit_code,
                }
            )
        return self.last_report

    # Installer generation outside a run

    def installer(self, repo_name: str, version: str) -> tuple[str, dict[str, Any]]:
        repo = self.config.repo(repo_name)
        source = repo.installer_file()
        if source is None:
            raise ReleaseFailed(f"No existing installer configured for {repo_name}.")
        pattern = PatternExtractor().extract_file(source)
        binary = repo.binary_name or repo_name.rsplit("/", 1)[-1]
        script = render_installer(repo.github or repo_name, binary, pattern, version=version)
        return script, pattern.to_dict()
