from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigError
from .models import DeployerCredentials


@dataclass(slots=True)
class PathsConfig:
    artifacts: Path
    runtime: Path
    db: Path
    log: Path


@dataclass(slots=True)
class SchedulerConfig:
    concurrency: int = 1
    retention: int = 1000
    wait_timeout_seconds: float = 180.0
    wait_poll_seconds: float = 0.75


@dataclass(slots=True)
class ToolchainConfig:
    command: str = "npx hardhat run scripts/deploy.js --network {network}"
    project_dir: Path | None = None
    network: str = "sepolia"
    timeout_seconds: float = 300.0
    max_output_bytes: int = 10 * 1024 * 1024
    private_key_env: str = "DEPLOYER_PRIVATE_KEY"
    rpc_url_env: str = "SEPOLIA_RPC_URL"


@dataclass(slots=True)
class VerificationConfig:
    api_url: str = "https://api.etherscan.io/v2/api"
    chain_id: int = 11155111
    api_key_env: str = "ETHERSCAN_API_KEY"
    submit_attempts: int = 5
    backoff_seconds: float = 10.0
    poll_interval_seconds: float = 10.0
    poll_budget_seconds: float = 600.0
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)

    def deployer_credentials(self) -> DeployerCredentials:
        return DeployerCredentials(
            private_key=os.environ.get(self.toolchain.private_key_env) or None,
            rpc_url=os.environ.get(self.toolchain.rpc_url_env) or None,
        )

    def registrar_api_key(self) -> str | None:
        return os.environ.get(self.verification.api_key_env) or None


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ConfigError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"`{key}` must be a mapping")
    return value


def _number(mapping: dict, key: str, section: str, default: float, cast: type = float) -> float:
    value = mapping.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"`{section}.{key}` must be a number, got {value!r}") from exc


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ConfigError("`paths` must be a mapping")
    scheduler_raw = _section(raw, "scheduler")
    toolchain_raw = _section(raw, "toolchain")
    verification_raw = _section(raw, "verification")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        artifacts=to_path(_require(paths_raw, "artifacts", "paths")),
        runtime=to_path(_require(paths_raw, "runtime", "paths")),
        db=to_path(_require(paths_raw, "db", "paths")),
        log=to_path(_require(paths_raw, "log", "paths")),
    )

    scheduler = SchedulerConfig(
        concurrency=int(_number(scheduler_raw, "concurrency", "scheduler", 1, int)),
        retention=int(_number(scheduler_raw, "retention", "scheduler", 1000, int)),
        wait_timeout_seconds=_number(scheduler_raw, "wait_timeout_seconds", "scheduler", 180.0),
        wait_poll_seconds=_number(scheduler_raw, "wait_poll_seconds", "scheduler", 0.75),
    )
    if scheduler.concurrency < 1:
        raise ConfigError("`scheduler.concurrency` must be >= 1")
    if scheduler.retention < 1:
        raise ConfigError("`scheduler.retention` must be >= 1")
    if scheduler.wait_poll_seconds <= 0:
        raise ConfigError("`scheduler.wait_poll_seconds` must be > 0")

    defaults = ToolchainConfig()
    project_dir_raw = toolchain_raw.get("project_dir")
    toolchain = ToolchainConfig(
        command=str(toolchain_raw.get("command", defaults.command)),
        project_dir=to_path(project_dir_raw) if project_dir_raw else None,
        network=str(toolchain_raw.get("network", defaults.network)),
        timeout_seconds=_number(toolchain_raw, "timeout_seconds", "toolchain", defaults.timeout_seconds),
        max_output_bytes=int(
            _number(toolchain_raw, "max_output_bytes", "toolchain", defaults.max_output_bytes, int)
        ),
        private_key_env=str(toolchain_raw.get("private_key_env", defaults.private_key_env)),
        rpc_url_env=str(toolchain_raw.get("rpc_url_env", defaults.rpc_url_env)),
    )
    if not toolchain.command.strip():
        raise ConfigError("`toolchain.command` must not be empty")
    if toolchain.timeout_seconds <= 0:
        raise ConfigError("`toolchain.timeout_seconds` must be > 0")
    if toolchain.max_output_bytes < 1024:
        raise ConfigError("`toolchain.max_output_bytes` must be >= 1024")

    vdefaults = VerificationConfig()
    verification = VerificationConfig(
        api_url=str(verification_raw.get("api_url", vdefaults.api_url)),
        chain_id=int(_number(verification_raw, "chain_id", "verification", vdefaults.chain_id, int)),
        api_key_env=str(verification_raw.get("api_key_env", vdefaults.api_key_env)),
        submit_attempts=int(
            _number(verification_raw, "submit_attempts", "verification", vdefaults.submit_attempts, int)
        ),
        backoff_seconds=_number(verification_raw, "backoff_seconds", "verification", vdefaults.backoff_seconds),
        poll_interval_seconds=_number(
            verification_raw, "poll_interval_seconds", "verification", vdefaults.poll_interval_seconds
        ),
        poll_budget_seconds=_number(
            verification_raw, "poll_budget_seconds", "verification", vdefaults.poll_budget_seconds
        ),
        request_timeout_seconds=_number(
            verification_raw, "request_timeout_seconds", "verification", vdefaults.request_timeout_seconds
        ),
    )
    if verification.submit_attempts < 1:
        raise ConfigError("`verification.submit_attempts` must be >= 1")
    if verification.poll_interval_seconds <= 0:
        raise ConfigError("`verification.poll_interval_seconds` must be > 0")
    if verification.poll_budget_seconds < 0:
        raise ConfigError("`verification.poll_budget_seconds` must be >= 0")

    return AppConfig(paths=paths, scheduler=scheduler, toolchain=toolchain, verification=verification)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.runtime.mkdir(parents=True, exist_ok=True)
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
