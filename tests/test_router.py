from pathlib import Path

import pytest
import yaml

from shipyard.build import BuildRouter, PlatformRule, infer_platform, load_workflow, parse_workflow
from shipyard.errors import RoutingError
from shipyard.models import CONTAINER_REPLAY, NATIVE_REMOTE

RELEASE_WORKFLOW = """
name: release
on:
  push:
    tags: ["v*"]
jobs:
  build-linux:
    runs-on: ubuntu-22.04
    steps:
      - uses: actions/checkout@v4
      - run: make dist
      - uses: actions/upload-artifact@v4
        with:
          name: linux
          path: |
            dist/*.tar.gz
            !dist/*.tmp
  build-macos:
    runs-on: macos-14
    steps:
      - run: make dist
  build-windows:
    runs-on: windows-latest
    env:
      SHIPYARD_PLATFORM: windows/arm64
    steps:
      - run: make dist
  publish:
    runs-on: ubuntu-latest
    needs: [build-linux, build-macos, build-windows]
    steps:
      - run: echo publish
"""


def _workflow(text: str = RELEASE_WORKFLOW):
    return parse_workflow(yaml.safe_load(text))


def test_parse_workflow_reads_jobs_needs_and_outputs() -> None:
    workflow = _workflow()

    assert list(workflow.jobs) == ["build-linux", "build-macos", "build-windows", "publish"]
    assert workflow.jobs["publish"].needs == ["build-linux", "build-macos", "build-windows"]
    assert workflow.jobs["build-linux"].outputs == ["dist/*.tar.gz"]
    assert workflow.jobs["build-windows"].platform == "windows/arm64"


def test_load_workflow_reports_missing_and_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(RoutingError, match="not found"):
        load_workflow(tmp_path / "missing.yml")

    broken = tmp_path / "broken.yml"
    broken.write_text("jobs: [unclosed\n", encoding="utf-8")
    with pytest.raises(RoutingError, match="not valid YAML"):
        load_workflow(broken)

    empty = tmp_path / "empty.yml"
    empty.write_text("name: nothing\n", encoding="utf-8")
    with pytest.raises(RoutingError, match="no jobs"):
        load_workflow(empty)


def test_analyze_buckets_jobs_by_runner_family() -> None:
    analysis = _workflow().analyze()

    assert analysis["linux_jobs"] == ["build-linux", "publish"]
    assert analysis["macos_jobs"] == ["build-macos"]
    assert analysis["windows_jobs"] == ["build-windows"]
    assert analysis["container_compatible"] == 2
    assert analysis["native_required"] == 2


@pytest.mark.parametrize(
    ("label", "platform"),
    [
        ("ubuntu-latest", "linux/amd64"),
        ("ubuntu-24.04-arm", "linux/arm64"),
        ("macos-14", "darwin/arm64"),
        ("macos-13", "darwin/amd64"),
        ("macos-latest-intel", "darwin/amd64"),
        ("windows-2022", "windows/amd64"),
        ("self-hosted", None),
    ],
)
def test_infer_platform(label: str, platform: str | None) -> None:
    assert infer_platform(label) == platform


def test_plan_routes_by_label_family_in_dependency_order() -> None:
    plan = BuildRouter().plan(_workflow())

    by_job = {target.job: target for target in plan.targets}
    assert [target.job for target in plan.targets][-1] == "publish"
    assert by_job["build-linux"].strategy == CONTAINER_REPLAY
    assert by_job["build-linux"].host == "trj"
    assert by_job["build-macos"].strategy == NATIVE_REMOTE
    assert by_job["build-macos"].host == "mmini"
    assert by_job["build-windows"].host == "wlap"
    assert by_job["build-windows"].platform == "windows/arm64"
    assert by_job["publish"].depends_on == ["build-linux", "build-macos", "build-windows"]
    assert plan.strategies() == {CONTAINER_REPLAY, NATIVE_REMOTE}
    assert plan.rejected == []


def test_cycle_fails_before_any_target_exists() -> None:
    workflow = _workflow(
        """
jobs:
  a:
    runs-on: ubuntu-latest
    needs: c
  b:
    runs-on: ubuntu-latest
    needs: a
  c:
    runs-on: ubuntu-latest
    needs: b
"""
    )

    with pytest.raises(RoutingError, match="cycle"):
        BuildRouter().plan(workflow)


def test_undefined_needs_fail_planning() -> None:
    workflow = _workflow(
        """
jobs:
  a:
    runs-on: ubuntu-latest
    needs: [ghost]
"""
    )

    with pytest.raises(RoutingError, match="ghost"):
        BuildRouter().plan(workflow)


def test_unsupported_label_rejects_only_that_job() -> None:
    workflow = _workflow(
        """
jobs:
  linux:
    runs-on: ubuntu-latest
  fpga:
    runs-on: [self-hosted, fpga]
"""
    )

    plan = BuildRouter().plan(workflow)

    assert [target.job for target in plan.targets] == ["linux"]
    assert [target.job for target in plan.rejected] == ["fpga"]
    rejected = plan.rejected[0]
    assert rejected.status == "skipped"
    assert rejected.cause == "unsupported_platform"
    assert "self-hosted,fpga" in rejected.detail


def test_family_without_host_is_rejected() -> None:
    router = BuildRouter(hosts={"container": "trj"})

    plan = router.plan(_workflow())

    assert {target.job for target in plan.rejected} == {"build-macos", "build-windows"}


def test_custom_rules_extend_routing() -> None:
    workflow = _workflow(
        """
jobs:
  freebsd:
    runs-on: freebsd-14
"""
    )
    rules = [PlatformRule("freebsd-*", NATIVE_REMOTE, "bsd")]

    plan = BuildRouter(rules=rules, hosts={"bsd": "bsdbox"}).plan(workflow)

    assert plan.targets[0].host == "bsdbox"
    assert plan.targets[0].platform == "freebsd-14"


def test_platform_filter_keeps_transitive_dependencies() -> None:
    workflow = _workflow(
        """
jobs:
  prepare:
    runs-on: ubuntu-latest
  build-macos:
    runs-on: macos-14
    needs: prepare
  build-linux:
    runs-on: ubuntu-latest
    needs: prepare
"""
    )

    plan = BuildRouter().plan(workflow, platforms=["darwin/arm64", "freebsd/amd64"])

    assert [target.job for target in plan.targets] == ["prepare", "build-macos"]
    assert plan.missing_platforms == ["freebsd/amd64"]
