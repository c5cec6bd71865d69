from shipyard.build.executor import BuildExecutor, BuildRequest
from shipyard.build.router import BuildRouter, ExecutionPlan, PlatformRule, infer_platform
from shipyard.build.workflow import JobSpec, WorkflowDefinition, load_workflow, parse_workflow

__all__ = [
    "BuildExecutor",
    "BuildRequest",
    "BuildRouter",
    "ExecutionPlan",
    "JobSpec",
    "PlatformRule",
    "WorkflowDefinition",
    "infer_platform",
    "load_workflow",
    "parse_workflow",
]
