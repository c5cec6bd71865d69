from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from shipyard.errors import RoutingError

UPLOAD_ARTIFACT_ACTION = "actions/upload-artifact"
PLATFORM_ENV_KEY = "SHIPYARD_PLATFORM"


@dataclass(slots=True)
class JobSpec:
    name: str
    runs_on: str
    needs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    platform: str | None = None
    steps: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowDefinition:
    name: str
    jobs: dict[str, JobSpec] = field(default_factory=dict)
    path: Path | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def analyze(self) -> dict[str, Any]:
        buckets: dict[str, list[str]] = {
            "linux_jobs": [],
            "macos_jobs": [],
            "windows_jobs": [],
            "other_jobs": [],
        }
        for job in self.jobs.values():
            label = job.runs_on.lower()
            if label.startswith("ubuntu-") or "linux" in label:
                buckets["linux_jobs"].append(job.name)
            elif label.startswith("macos-"):
                buckets["macos_jobs"].append(job.name)
            elif label.startswith("windows-"):
                buckets["windows_jobs"].append(job.name)
            else:
                buckets["other_jobs"].append(job.name)
        return {
            "workflow": str(self.path) if self.path else self.name,
            **buckets,
            "container_compatible": len(buckets["linux_jobs"]),
            "native_required": len(buckets["macos_jobs"]) + len(buckets["windows_jobs"]),
        }


def _runs_on_label(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return ",".join(str(item).strip() for item in value if str(item).strip())
    if isinstance(value, dict):
        labels = value.get("labels")
        if labels is not None:
            return _runs_on_label(labels)
        group = value.get("group")
        return str(group).strip() if group else ""
    return ""


def _needs(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value]
    raise RoutingError(f"Unsupported 'needs' value: {value!r}")


def _declared_outputs(steps: list[dict[str, Any]]) -> list[str]:
    outputs: list[str] = []
    for step in steps:
        uses = str(step.get("uses") or "")
        if not uses.startswith(UPLOAD_ARTIFACT_ACTION):
            continue
        with_block = step.get("with") or {}
        if not isinstance(with_block, dict):
            continue
        for line in str(with_block.get("path") or "").splitlines():
            candidate = line.strip()
            if candidate and not candidate.startswith("!"):
                outputs.append(candidate)
    return outputs


def parse_workflow(data: Any, *, path: Path | None = None) -> WorkflowDefinition:
    if not isinstance(data, dict):
        raise RoutingError("Workflow definition must be a mapping.")
    jobs_block = data.get("jobs")
    if not isinstance(jobs_block, dict) or not jobs_block:
        raise RoutingError("Workflow definition declares no jobs.")

    jobs: dict[str, JobSpec] = {}
    for job_name, job_data in jobs_block.items():
        if not isinstance(job_data, dict):
            raise RoutingError(f"Job '{job_name}' must be a mapping.")
        steps = [step for step in job_data.get("steps") or [] if isinstance(step, dict)]
        env = job_data.get("env") if isinstance(job_data.get("env"), dict) else {}
        platform = env.get(PLATFORM_ENV_KEY)
        jobs[str(job_name)] = JobSpec(
            name=str(job_name),
            runs_on=_runs_on_label(job_data.get("runs-on")),
            needs=_needs(job_data.get("needs")),
            outputs=_declared_outputs(steps),
            platform=str(platform) if platform else None,
            steps=steps,
        )

    name = str(data.get("name") or (path.stem if path else "workflow"))
    return WorkflowDefinition(name=name, jobs=jobs, path=path, raw=data)


def load_workflow(path: Path) -> WorkflowDefinition:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RoutingError(f"Workflow not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise RoutingError(f"Workflow {path} is not valid YAML: {exc}") from exc
    return parse_workflow(data, path=path)
