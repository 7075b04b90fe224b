from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .db import connect_db, default_state_db_path
from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class RetryConfig:
    strategy: str
    max_attempts: int
    base_delay_seconds: int
    max_delay_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    run_deadline_seconds: int
    retry: RetryConfig


@dataclass(frozen=True)
class AdaptersConfig:
    timeout_seconds: int
    token_env: str
    generation_url: str
    draft_store_url: str
    optimization_url: str


@dataclass(frozen=True)
class PublishTargetConfig:
    name: str
    url: str
    timeout_seconds: int


@dataclass(frozen=True)
class PublishingConfig:
    targets: list[PublishTargetConfig]


@dataclass(frozen=True)
class LinksConfig:
    probe_timeout_seconds: int
    slow_threshold_ms: int
    failure_threshold: int
    probe_concurrency: int
    run_deadline_seconds: int
    user_agent: str
    report_broken_limit: int
    report_slow_limit: int
    slow_window_days: int


@dataclass(frozen=True)
class RotationConfig:
    batch_size: int


@dataclass(frozen=True)
class IngestConfig:
    required_status: str
    keyword_separator: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    jobs: JobsConfig
    adapters: AdaptersConfig
    publishing: PublishingConfig
    links: LinksConfig
    rotation: RotationConfig
    ingest: IngestConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "PureFlow",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
    },
    "jobs": {
        "lock_timeout_seconds": 900,
        "run_deadline_seconds": 600,
        "retry": {
            "strategy": "none",
            "max_attempts": 3,
            "base_delay_seconds": 300,
            "max_delay_seconds": 3600,
        },
    },
    "adapters": {
        "timeout_seconds": 60,
        "token_env": "PF_ADAPTER_TOKEN",
        "generation_url": "http://localhost:4000/automation/generate",
        "draft_store_url": "http://localhost:4000/content/articles",
        "optimization_url": "http://localhost:4000/automation/optimize",
    },
    "publishing": {
        "targets": [
            {
                "name": "wordpress",
                "url": "http://localhost:4000/content/publish-to-wordpress",
                "timeout_seconds": 30,
            },
            {
                "name": "medium",
                "url": "http://localhost:4000/content/publish-to-medium",
                "timeout_seconds": 30,
            },
        ],
    },
    "links": {
        "probe_timeout_seconds": 10,
        "slow_threshold_ms": 3000,
        "failure_threshold": 3,
        "probe_concurrency": 1,
        "run_deadline_seconds": 3600,
        "user_agent": "PureFlow-LinkProbe/0.1",
        "report_broken_limit": 20,
        "report_slow_limit": 10,
        "slow_window_days": 7,
    },
    "rotation": {
        "batch_size": 10,
    },
    "ingest": {
        "required_status": "Planned",
        "keyword_separator": ",",
    },
}

CONFIG_KEY = "config.runtime"
RETRY_STRATEGIES = ("none", "fixed", "exponential")


def get_config_path(path: str | None = None) -> str:
    return path or os.environ.get("PF_CONFIG_PATH") or "/config/config.yml"


def get_state_db_path() -> str:
    return default_state_db_path()


def load_config_dict(path: str | None = None) -> dict[str, Any]:
    """Read the YAML config file and merge it over the defaults.

    A missing file is not an error: the defaults (with ``PF_DATA_DIR``
    applied to the state db path) are returned.
    """
    cfg = _deep_copy(DEFAULT_CONFIG)
    cfg["paths"]["state_db"] = get_state_db_path()
    cfg["paths"]["data_dir"] = os.path.dirname(cfg["paths"]["state_db"])
    config_path = get_config_path(path)
    if not os.path.exists(config_path):
        return cfg
    try:
        with open(config_path, "r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    errors: list[str] = []
    _validate_dict(loaded, DEFAULT_CONFIG, "config", errors, partial=True)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _deep_merge(cfg, loaded)


def load_config(path: str | None = None) -> Config:
    cfg = load_config_dict(path)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def get_runtime_config(conn) -> dict[str, Any]:
    overrides = get_setting(conn, CONFIG_KEY, {})
    if not isinstance(overrides, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return overrides


def set_runtime_config(conn, overrides: dict[str, Any]) -> None:
    errors: list[str] = []
    _validate_dict(overrides, DEFAULT_CONFIG, "config.runtime", errors, partial=True)
    if not errors:
        errors = validate_config(_deep_merge(_deep_copy(DEFAULT_CONFIG), overrides))
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(overrides))


def load_runtime_config(conn, base: dict[str, Any] | None = None) -> Config:
    """Effective config: ``base`` (file config or defaults) with stored overrides on top."""
    cfg = _deep_merge(_deep_copy(base or DEFAULT_CONFIG), get_runtime_config(conn))
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return _build_config(cfg)


def open_state(path: str | None = None):
    """Connect to the state db named by the config and load the effective config."""
    base = load_config_dict(path)
    conn = connect_db(base["paths"]["state_db"])
    try:
        return conn, load_runtime_config(conn, base)
    except ConfigError:
        conn.close()
        raise


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    strategy = cfg["jobs"]["retry"]["strategy"]
    if strategy not in RETRY_STRATEGIES:
        errors.append(
            "config.jobs.retry.strategy must be one of " + ", ".join(RETRY_STRATEGIES)
        )
    jobs = cfg["jobs"]
    if jobs["run_deadline_seconds"] < 1:
        errors.append("config.jobs.run_deadline_seconds must be >= 1")
    elif jobs["lock_timeout_seconds"] <= jobs["run_deadline_seconds"]:
        errors.append(
            "config.jobs.lock_timeout_seconds must be greater than config.jobs.run_deadline_seconds"
        )
    if cfg["links"]["failure_threshold"] < 1:
        errors.append("config.links.failure_threshold must be >= 1")
    if cfg["links"]["probe_concurrency"] < 1:
        errors.append("config.links.probe_concurrency must be >= 1")
    names = [target["name"] for target in cfg["publishing"]["targets"]]
    if len(names) != len(set(names)):
        errors.append("config.publishing.targets names must be unique")
    return errors


# Scalar defaults accept these value types. bool precedes int since bool subclasses int.
_SCALAR_RULES: list[tuple[type, tuple[type, ...], str]] = [
    (bool, (bool,), "a boolean"),
    (int, (int,), "an integer"),
    (float, (int, float), "a number"),
    (str, (str,), "a string"),
]


def _validate_dict(
    value: Any,
    schema: dict[str, Any],
    path: str,
    errors: list[str],
    partial: bool = False,
) -> None:
    """Check ``value`` against the shape of ``schema`` (a defaults dict).

    ``partial`` allows keys to be missing, as in a config file or a
    runtime override that only sets a few values.
    """
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    errors.extend(f"unknown {path}.{key}" for key in value if key not in schema)
    for key, default in schema.items():
        if key in value:
            _validate_value(value[key], default, f"{path}.{key}", errors, partial)
        elif not partial:
            errors.append(f"missing {path}.{key}")


def _validate_value(
    value: Any, default: Any, path: str, errors: list[str], partial: bool = False
) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors, partial)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        # List entries are whole records, so they are never partial.
        item_schema = default[0] if default else ""
        for index, item in enumerate(value):
            before = len(errors)
            _validate_value(item, item_schema, f"{path}[{index}]", errors)
            if len(errors) > before and not isinstance(item_schema, dict):
                break
        return
    for default_type, accepted, label in _SCALAR_RULES:
        if isinstance(default, default_type):
            if not isinstance(value, accepted) or (default_type is not bool and isinstance(value, bool)):
                errors.append(f"{path} must be {label}")
            return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    jobs_cfg = cfg.get("jobs") or {}
    retry_cfg = jobs_cfg.get("retry") or {}
    adapters_cfg = cfg.get("adapters") or {}
    publishing_cfg = cfg.get("publishing") or {}
    links_cfg = cfg.get("links") or {}
    rotation_cfg = cfg.get("rotation") or {}
    ingest_cfg = cfg.get("ingest") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
    )

    retry = RetryConfig(
        strategy=str(retry_cfg.get("strategy")),
        max_attempts=int(retry_cfg.get("max_attempts")),
        base_delay_seconds=int(retry_cfg.get("base_delay_seconds")),
        max_delay_seconds=int(retry_cfg.get("max_delay_seconds")),
    )
    jobs = JobsConfig(
        lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
        run_deadline_seconds=int(jobs_cfg.get("run_deadline_seconds")),
        retry=retry,
    )

    adapters = AdaptersConfig(
        timeout_seconds=int(adapters_cfg.get("timeout_seconds")),
        token_env=str(adapters_cfg.get("token_env")),
        generation_url=str(adapters_cfg.get("generation_url")),
        draft_store_url=str(adapters_cfg.get("draft_store_url")),
        optimization_url=str(adapters_cfg.get("optimization_url")),
    )

    publishing = PublishingConfig(
        targets=[
            PublishTargetConfig(
                name=str(target.get("name")),
                url=str(target.get("url")),
                timeout_seconds=int(target.get("timeout_seconds")),
            )
            for target in publishing_cfg.get("targets") or []
        ]
    )

    links = LinksConfig(
        probe_timeout_seconds=int(links_cfg.get("probe_timeout_seconds")),
        slow_threshold_ms=int(links_cfg.get("slow_threshold_ms")),
        failure_threshold=int(links_cfg.get("failure_threshold")),
        probe_concurrency=int(links_cfg.get("probe_concurrency")),
        run_deadline_seconds=int(links_cfg.get("run_deadline_seconds")),
        user_agent=str(links_cfg.get("user_agent")),
        report_broken_limit=int(links_cfg.get("report_broken_limit")),
        report_slow_limit=int(links_cfg.get("report_slow_limit")),
        slow_window_days=int(links_cfg.get("slow_window_days")),
    )

    rotation = RotationConfig(batch_size=int(rotation_cfg.get("batch_size")))

    ingest = IngestConfig(
        required_status=str(ingest_cfg.get("required_status")),
        keyword_separator=str(ingest_cfg.get("keyword_separator")),
    )

    return Config(
        app=app,
        paths=paths,
        jobs=jobs,
        adapters=adapters,
        publishing=publishing,
        links=links,
        rotation=rotation,
        ingest=ingest,
    )


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
