import json
import time
from pathlib import Path

import pytest
from click.testing import CliRunner

from shipyard.cli import cli
from shipyard.collaborators.base import (
    ContainerReplay,
    NativeRemote,
    OutputHook,
    ProcessResult,
    QueueTimeSource,
    ReplayResult,
)
from shipyard.config import RepoConfig, ShipyardConfig, load_config, save_config
from shipyard.coordinator import Collaborators
from shipyard.state import LockManager, StateDirectory

FIXTURES = Path(__file__).parent / "fixtures" / "naming"

WORKFLOW = """
name: release
jobs:
  build-linux:
    runs-on: ubuntu-latest
  build-macos:
    runs-on: macos-14
"""


class FakeQueue(QueueTimeSource):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    async def get_queue_time(self, repo: str, workflow: str) -> float:
        _ = repo, workflow
        return self.seconds


class FakeReplay(ContainerReplay):
    async def run(
        self,
        workflow_file: Path,
        job_name: str,
        *,
        workdir: Path | None = None,
        on_output: OutputHook | None = None,
    ) -> ReplayResult:
        _ = workflow_file, job_name, workdir
        if on_output:
            on_output("stdout", "ok")
        return ReplayResult(exit_code=0)


class FakeRemote(NativeRemote):
    async def execute(
        self,
        host: str,
        command: str,
        *,
        on_output: OutputHook | None = None,
    ) -> ProcessResult:
        _ = host, command, on_output
        return ProcessResult(exit_code=0)

    async def fetch_file(self, host: str, remote_path: str, local_dir: Path) -> Path:
        _ = host
        local_dir.mkdir(parents=True, exist_ok=True)
        path = local_dir / remote_path.rsplit("/", 1)[-1]
        path.write_bytes(b"mac build")
        return path


def _write_config(tmp_path: Path) -> Path:
    repo_dir = tmp_path / "repo"
    workflow = repo_dir / ".github" / "workflows" / "release.yml"
    workflow.parent.mkdir(parents=True)
    workflow.write_text(WORKFLOW, encoding="utf-8")
    config = ShipyardConfig.default()
    config.state.state_dir = str(tmp_path / "state")
    config.release.output_dir = str(tmp_path / "dist")
    config.repos["tool"] = RepoConfig(
        github="example/tool",
        local_path=str(repo_dir),
        binary_name="mytool",
        remote_workdir="~/src/tool",
        build_cmd="make dist",
        artifact_path="dist/{name}-{target}.{ext}",
        installer=str(FIXTURES / "simple_install.sh"),
    )
    config_path = tmp_path / "shipyard.toml"
    save_config(config_path, config)
    return config_path


def _use_fakes(monkeypatch: pytest.MonkeyPatch, queue_seconds: float = 900.0) -> None:
    monkeypatch.setattr(
        "shipyard.cli._build_collaborators",
        lambda config, event_hook: Collaborators(
            queue=FakeQueue(queue_seconds), container=FakeReplay(), native=FakeRemote()
        ),
    )


def test_init_writes_default_config(tmp_path: Path) -> None:
    config_path = tmp_path / "shipyard.toml"

    result = CliRunner().invoke(cli, ["--config", str(config_path), "init"])

    assert result.exit_code == 0
    assert "Config:" in result.output
    assert load_config(config_path).throttle.threshold_seconds == 600.0


def test_init_rejects_invalid_config(tmp_path: Path) -> None:
    config_path = tmp_path / "shipyard.toml"
    config_path.write_text("[throttle\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(config_path), "init"])

    assert result.exit_code == 4
    assert "not valid TOML" in result.output
    assert config_path.read_text(encoding="utf-8") == "[throttle\n"


def test_check_reports_throttled_repos(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch, queue_seconds=1200.0)

    result = CliRunner().invoke(
        cli, ["--config", str(config_path), "--json", "check", "tool", "--threshold", "600"]
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["status"] == "success"
    assert payload["details"]["throttled"][0]["repo"] == "example/tool"


def test_plan_prints_routes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch)

    result = CliRunner().invoke(cli, ["--config", str(config_path), "plan", "tool"])

    assert result.exit_code == 0
    assert "container-replay @ trj" in result.output
    assert "native-remote @ mmini" in result.output


def test_plan_unknown_repo_is_usage_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch)

    result = CliRunner().invoke(cli, ["--config", str(config_path), "plan", "nope"])

    assert result.exit_code == 4
    assert "not configured" in result.output


def test_fallback_runs_end_to_end(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch)

    result = CliRunner().invoke(
        cli,
        ["--config", str(config_path), "--json", "fallback", "tool", "--version", "v1.0.0"],
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["command"] == "fallback"
    assert payload["status"] == "success"
    out = tmp_path / "dist" / "tool" / "v1.0.0"
    assert (out / "mytool-1.0.0-darwin-arm64.tar.gz").exists()
    assert (out / "mytool-darwin-arm64.tar.gz").exists()
    assert (out / "install.sh").exists()


def test_fallback_refuses_healthy_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch, queue_seconds=5.0)

    result = CliRunner().invoke(
        cli, ["--config", str(config_path), "fallback", "tool", "--version", "v1.0.0"]
    )

    assert result.exit_code == 4
    assert "fallback: error" in result.output


def test_fallback_dry_run_text_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch)

    result = CliRunner().invoke(
        cli,
        ["--config", str(config_path), "fallback", "tool", "--version", "v1.0.0", "--dry-run"],
    )

    assert result.exit_code == 0
    assert result.output.startswith("fallback: success")


def test_locks_lists_and_sweeps(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch)
    store = StateDirectory(tmp_path / "state")
    LockManager(store, clock=lambda: time.time() - 10_000).acquire("tool", "run-old")
    runner = CliRunner()

    listed = runner.invoke(cli, ["--config", str(config_path), "locks"])
    swept = runner.invoke(cli, ["--config", str(config_path), "locks", "--sweep"])
    after = runner.invoke(cli, ["--config", str(config_path), "locks"])

    assert "stale" in listed.output
    assert "run-old" in listed.output
    assert "reclaimed tool (was run-old)" in swept.output
    assert "No locks held." in after.output


def test_naming_reports_pattern(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cli,
        ["--config", str(tmp_path / "shipyard.toml"), "naming", str(FIXTURES / "go_style_vars.sh")],
    )

    assert result.exit_code == 0
    assert "gotool-{os}-{arch}.tar.gz  (explicit-variable via TAR)" in result.output


def test_naming_validates_against_workflow(tmp_path: Path) -> None:
    workflow = tmp_path / "release.yml"
    workflow.write_text(
        "jobs:\n  build:\n    runs-on: ubuntu-latest\n    steps:\n"
        "      - uses: actions/upload-artifact@v4\n"
        "        with:\n          name: mytool-${{ matrix.target }}.tar.gz\n",
        encoding="utf-8",
    )

    result = CliRunner().invoke(
        cli,
        [
            "--config",
            str(tmp_path / "shipyard.toml"),
            "--json",
            "naming",
            str(FIXTURES / "simple_install.sh"),
            "--workflow",
            str(workflow),
            "--name",
            "mytool",
        ],
    )

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["workflow_patterns"] == ["mytool-{target}.tar.gz"]
    assert payload["validation"]["status"] == "warning"
    assert payload["validation"]["mismatches"] == ["ext"]


def test_installer_writes_script(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path)
    _use_fakes(monkeypatch)
    output = tmp_path / "install.sh"

    result = CliRunner().invoke(
        cli,
        [
            "--config",
            str(config_path),
            "installer",
            "tool",
            "--version",
            "v1.0.0",
            "--output",
            str(output),
        ],
    )

    assert result.exit_code == 0
    assert "mytool-{target}.{ext}" in result.output
    assert 'ASSET="mytool-${OS}-${ARCH}.${EXT}"' in output.read_text(encoding="utf-8")
