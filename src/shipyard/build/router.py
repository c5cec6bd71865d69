from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any

from shipyard.build.workflow import JobSpec, WorkflowDefinition
from shipyard.errors import RoutingError, UnsupportedPlatform
from shipyard.models import CONTAINER_REPLAY, NATIVE_REMOTE, BuildTarget, Strategy

_INTEL_MAC_LABEL = re.compile(r"macos-1[0-3](?:\b|-)")


@dataclass(slots=True)
class PlatformRule:
    pattern: str
    strategy: Strategy
    host_family: str

    def matches(self, label: str) -> bool:
        return fnmatch.fnmatch(label.lower(), self.pattern.lower())

    def to_dict(self) -> dict[str, str]:
        return {"pattern": self.pattern, "strategy": self.strategy, "host_family": self.host_family}


DEFAULT_RULES: tuple[PlatformRule, ...] = (
    PlatformRule("ubuntu-*", CONTAINER_REPLAY, "container"),
    PlatformRule("*linux*", CONTAINER_REPLAY, "container"),
    PlatformRule("macos-*", NATIVE_REMOTE, "darwin"),
    PlatformRule("windows-*", NATIVE_REMOTE, "windows"),
)

DEFAULT_HOSTS = {"container": "trj", "darwin": "mmini", "windows": "wlap"}


def infer_platform(label: str) -> str | None:
    """Guess the ``os/arch`` pair a runner label builds for."""
    lowered = label.lower()
    arm = "arm" in lowered or "aarch64" in lowered
    if "windows" in lowered:
        return "windows/arm64" if arm else "windows/amd64"
    if "macos" in lowered or "darwin" in lowered:
        if "intel" in lowered or _INTEL_MAC_LABEL.search(lowered):
            return "darwin/amd64"
        return "darwin/arm64"
    if "ubuntu" in lowered or "linux" in lowered:
        return "linux/arm64" if arm else "linux/amd64"
    return None


@dataclass(slots=True)
class ExecutionPlan:
    workflow: WorkflowDefinition
    targets: list[BuildTarget] = field(default_factory=list)
    rejected: list[BuildTarget] = field(default_factory=list)
    missing_platforms: list[str] = field(default_factory=list)

    @property
    def all_targets(self) -> list[BuildTarget]:
        return [*self.targets, *self.rejected]

    def strategies(self) -> set[Strategy]:
        return {target.strategy for target in self.targets if target.strategy is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow.name,
            "targets": [target.to_dict() for target in self.targets],
            "rejected": [target.to_dict() for target in self.rejected],
            "missing_platforms": list(self.missing_platforms),
        }


class BuildRouter:
    """Maps workflow jobs onto execution strategies and build hosts."""

    def __init__(
        self,
        rules: list[PlatformRule] | None = None,
        hosts: dict[str, str] | None = None,
    ) -> None:
        self.rules = list(rules) if rules else list(DEFAULT_RULES)
        self.hosts = dict(DEFAULT_HOSTS if hosts is None else hosts)

    def match_rule(self, label: str) -> PlatformRule | None:
        for rule in self.rules:
            if rule.matches(label):
                return rule
        return None

    @staticmethod
    def _check_graph(workflow: WorkflowDefinition) -> list[str]:
        graph: dict[str, set[str]] = {}
        for job in workflow.jobs.values():
            unknown = [name for name in job.needs if name not in workflow.jobs]
            if unknown:
                raise RoutingError(
                    f"Job '{job.name}' needs undefined job(s): {', '.join(sorted(unknown))}"
                )
            graph[job.name] = set(job.needs)
        try:
            return list(TopologicalSorter(graph).static_order())
        except CycleError as exc:
            cycle = exc.args[1] if len(exc.args) > 1 else []
            raise RoutingError(
                "Workflow dependency graph contains a cycle: " + " -> ".join(cycle)
            ) from exc

    def _route_job(self, job: JobSpec) -> BuildTarget:
        rule = self.match_rule(job.runs_on) if job.runs_on else None
        if rule is None:
            raise UnsupportedPlatform(job.name, job.runs_on)
        host = self.hosts.get(rule.host_family, "")
        if not host:
            raise UnsupportedPlatform(job.name, job.runs_on)
        platform = job.platform or infer_platform(job.runs_on) or job.runs_on
        return BuildTarget(
            job=job.name,
            platform=platform,
            strategy=rule.strategy,
            host=host,
            runs_on=job.runs_on,
            depends_on=list(job.needs),
            outputs=list(job.outputs),
        )

    @staticmethod
    def _select_jobs(
        workflow: WorkflowDefinition,
        order: list[str],
        platforms: list[str],
    ) -> tuple[set[str], list[str]]:
        wanted: set[str] = set()
        covered: set[str] = set()
        for name in order:
            job = workflow.jobs[name]
            platform = job.platform or infer_platform(job.runs_on)
            if platform in platforms:
                wanted.add(name)
                covered.add(platform)

        selected: set[str] = set()
        stack = list(wanted)
        while stack:
            name = stack.pop()
            if name in selected:
                continue
            selected.add(name)
            stack.extend(workflow.jobs[name].needs)
        missing = [platform for platform in platforms if platform not in covered]
        return selected, missing

    def plan(
        self,
        workflow: WorkflowDefinition,
        *,
        platforms: list[str] | None = None,
    ) -> ExecutionPlan:
        """Expand ``workflow`` into dependency-ordered build targets.

        Cycles and references to undefined jobs fail the whole plan before anything
        runs. An unrecognized runner label rejects only that job.
        """
        order = self._check_graph(workflow)
        if platforms:
            selected, missing = self._select_jobs(workflow, order, platforms)
        else:
            selected, missing = set(order), []

        plan = ExecutionPlan(workflow=workflow, missing_platforms=missing)
        for name in order:
            if name not in selected:
                continue
            job = workflow.jobs[name]
            try:
                plan.targets.append(self._route_job(job))
            except UnsupportedPlatform as exc:
                rejected = BuildTarget(
                    job=job.name,
                    platform=job.platform or infer_platform(job.runs_on) or job.runs_on,
                    strategy=None,
                    host="",
                    runs_on=job.runs_on,
                    depends_on=list(job.needs),
                    outputs=list(job.outputs),
                    detail=str(exc),
                )
                rejected.transition("skipped", cause="unsupported_platform")
                plan.rejected.append(rejected)
        return plan
