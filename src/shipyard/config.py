from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

from shipyard.build.router import DEFAULT_RULES, PlatformRule
from shipyard.models import CONTAINER_REPLAY, NATIVE_REMOTE

DEFAULT_CONFIG_NAME = "shipyard.toml"


class ConfigError(ValueError):
    """Raised for configuration files that cannot be used."""


def default_state_dir() -> str:
    base = os.environ.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return str(Path(base) / "shipyard")


@dataclass(slots=True)
class ThrottleConfig:
    threshold_seconds: float = 600.0
    workflow: str = "release.yml"
    max_concurrency: int = 8


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 2
    backoff_seconds: float = 0.5
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class ExecutorConfig:
    target_timeout_seconds: float = 3600.0
    run_timeout_seconds: float = 10800.0
    container_concurrency: int = 2
    native_concurrency: int = 1


@dataclass(slots=True)
class HostsConfig:
    container: str = "trj"
    darwin: str = "mmini"
    windows: str = "wlap"

    def as_mapping(self) -> dict[str, str]:
        return {"container": self.container, "darwin": self.darwin, "windows": self.windows}


@dataclass(slots=True)
class RoutingConfig:
    rules: list[PlatformRule] = field(
        default_factory=lambda: [
            PlatformRule(rule.pattern, rule.strategy, rule.host_family) for rule in DEFAULT_RULES
        ]
    )


@dataclass(slots=True)
class StateConfig:
    state_dir: str = field(default_factory=default_state_dir)
    work_dir: str = ""
    lock_timeout_seconds: float = 900.0
    heartbeat_interval_seconds: float = 30.0

    def work_path(self) -> Path:
        """Build logs and artifacts; kept apart from the lock-managed state directory."""
        if self.work_dir:
            return Path(self.work_dir).expanduser().resolve()
        state = Path(self.state_dir).expanduser().resolve()
        return state.with_name(f"{state.name}-work")


@dataclass(slots=True)
class ReleaseConfig:
    output_dir: str = "dist/shipyard"
    sign: bool = False
    sbom: bool = False
    minisign_key: str = ""


@dataclass(slots=True)
class RepoConfig:
    github: str = ""
    local_path: str = ""
    workflow: str = ""
    targets: list[str] = field(default_factory=list)
    binary_name: str = ""
    remote_workdir: str = ""
    build_cmd: str = ""
    artifact_path: str = ""
    installer: str = ""

    def workflow_file(self, default_workflow: str) -> Path:
        name = self.workflow or default_workflow
        path = Path(name).expanduser()
        if path.is_absolute():
            return path
        if "/" not in name:
            path = Path(".github") / "workflows" / name
        return Path(self.local_path or ".").expanduser() / path

    def installer_file(self) -> Path | None:
        if not self.installer:
            return None
        path = Path(self.installer).expanduser()
        if path.is_absolute():
            return path
        return Path(self.local_path or ".").expanduser() / path


def _section(cls: type, data: object, name: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"[{name}] must be a table.")
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return cls(**data)


def _routing(data: object) -> RoutingConfig:
    if data is None:
        return RoutingConfig()
    if not isinstance(data, dict):
        raise ConfigError("[routing] must be a table.")
    raw_rules = data.get("rules")
    if raw_rules is None:
        return RoutingConfig()
    rules: list[PlatformRule] = []
    for index, item in enumerate(raw_rules):
        if not isinstance(item, dict):
            raise ConfigError(f"routing.rules[{index}] must be a table.")
        strategy = item.get("strategy")
        if strategy not in {CONTAINER_REPLAY, NATIVE_REMOTE}:
            raise ConfigError(f"routing.rules[{index}] has unknown strategy {strategy!r}.")
        pattern = str(item.get("pattern") or "")
        if not pattern:
            raise ConfigError(f"routing.rules[{index}] needs a pattern.")
        rules.append(
            PlatformRule(pattern, strategy, str(item.get("host_family") or "container"))
        )
    return RoutingConfig(rules=rules)


@dataclass(slots=True)
class ShipyardConfig:
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    hosts: HostsConfig = field(default_factory=HostsConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    state: StateConfig = field(default_factory=StateConfig)
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    repos: dict[str, RepoConfig] = field(default_factory=dict)

    @classmethod
    def default(cls) -> ShipyardConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ShipyardConfig:
        repos_data = data.get("repos", {})
        if not isinstance(repos_data, dict):
            raise ConfigError("[repos] must be a table of repository tables.")
        try:
            return cls(
                throttle=_section(ThrottleConfig, data.get("throttle"), "throttle"),
                retry=_section(RetryConfig, data.get("retry"), "retry"),
                executor=_section(ExecutorConfig, data.get("executor"), "executor"),
                hosts=_section(HostsConfig, data.get("hosts"), "hosts"),
                routing=_routing(data.get("routing")),
                state=_section(StateConfig, data.get("state"), "state"),
                release=_section(ReleaseConfig, data.get("release"), "release"),
                repos={
                    str(name): _section(RepoConfig, repo, f"repos.{name}")
                    for name, repo in repos_data.items()
                },
            )
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc

    def repo(self, name: str) -> RepoConfig:
        if name in self.repos:
            return self.repos[name]
        for repo in self.repos.values():
            if repo.github == name:
                return repo
        raise ConfigError(f"Repository '{name}' is not configured.")

    def github_name(self, name: str) -> str:
        repo = self.repos.get(name)
        if repo is not None and repo.github:
            return repo.github
        return name

    def to_dict(self) -> dict:
        return {
            "throttle": {
                "threshold_seconds": self.throttle.threshold_seconds,
                "workflow": self.throttle.workflow,
                "max_concurrency": self.throttle.max_concurrency,
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "backoff_seconds": self.retry.backoff_seconds,
                "timeout_seconds": self.retry.timeout_seconds,
            },
            "executor": {
                "target_timeout_seconds": self.executor.target_timeout_seconds,
                "run_timeout_seconds": self.executor.run_timeout_seconds,
                "container_concurrency": self.executor.container_concurrency,
                "native_concurrency": self.executor.native_concurrency,
            },
            "hosts": self.hosts.as_mapping(),
            "routing": {"rules": [rule.to_dict() for rule in self.routing.rules]},
            "state": {
                "state_dir": self.state.state_dir,
                "work_dir": self.state.work_dir,
                "lock_timeout_seconds": self.state.lock_timeout_seconds,
                "heartbeat_interval_seconds": self.state.heartbeat_interval_seconds,
            },
            "release": {
                "output_dir": self.release.output_dir,
                "sign": self.release.sign,
                "sbom": self.release.sbom,
                "minisign_key": self.release.minisign_key,
            },
            "repos": {
                name: {
                    "github": repo.github,
                    "local_path": repo.local_path,
                    "workflow": repo.workflow,
                    "targets": list(repo.targets),
                    "binary_name": repo.binary_name,
                    "remote_workdir": repo.remote_workdir,
                    "build_cmd": repo.build_cmd,
                    "artifact_path": repo.artifact_path,
                    "installer": repo.installer,
                }
                for name, repo in self.repos.items()
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key.replace("-", "").replace("_", "").isalnum():
        return key
    return json.dumps(key)


def dumps_toml(config: ShipyardConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["throttle", "retry", "executor", "hosts", "state", "release"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for rule in data["routing"]["rules"]:
        lines.append("[[routing.rules]]")
        for key, value in rule.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for name, repo in data["repos"].items():
        lines.append(f"[repos.{_toml_key(name)}]")
        for key, value in repo.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ShipyardConfig:
    if not path.exists():
        return ShipyardConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path} is not valid TOML: {exc}") from exc
    return ShipyardConfig.from_dict(data)


def save_config(path: Path, config: ShipyardConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
