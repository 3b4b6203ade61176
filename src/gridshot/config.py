from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path

import yaml

from .models import Status

DEFAULT_BOARDS = ("blocking", "informing")
DEFAULT_STATES = (Status.FAILING,)
DEFAULT_TESTGRID_URL = "https://testgrid.k8s.io"
DEFAULT_RENDER_URL = "https://render-tron.appspot.com/screenshot"
DEFAULT_UPLOAD_URL = "https://vgy.me/upload"


class ConfigError(ValueError):
    pass


@dataclass(slots=True)
class RetryConfig:
    retry_count: int = 3
    retry_sleep: float = 2.0
    # Status queries get their own budget; None means "same as retry_count".
    discovery_retry_count: int | None = None
    request_timeout: float = 60.0

    @property
    def effective_discovery_retry_count(self) -> int:
        if self.discovery_retry_count is None:
            return self.retry_count
        return self.discovery_retry_count


@dataclass(slots=True)
class RenderConfig:
    block_width: int = 30
    width: int = 3000
    height: int = 2500


@dataclass(slots=True)
class EndpointsConfig:
    testgrid_url: str = DEFAULT_TESTGRID_URL
    render_url: str = DEFAULT_RENDER_URL
    upload_url: str = DEFAULT_UPLOAD_URL


@dataclass(slots=True)
class AppConfig:
    upload_key: str
    boards: tuple[str, ...] = DEFAULT_BOARDS
    states: tuple[Status, ...] = DEFAULT_STATES
    render: RenderConfig = field(default_factory=RenderConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    endpoints: EndpointsConfig = field(default_factory=EndpointsConfig)
    log_file: Path | None = None
    debug: bool = False


def _lookup(raw: Mapping[str, object], environ: Mapping[str, str], key: str) -> object | None:
    env_value = environ.get(key.upper())
    if env_value is not None and env_value.strip() != "":
        return env_value
    return raw.get(key)


def _to_int(value: object, key: str, *, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"`{key}` must be an integer, got {value!r}")
    try:
        number = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"`{key}` must be an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"`{key}` must be >= {minimum}, got {number}")
    return number


def _to_float(value: object, key: str) -> float:
    try:
        number = float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"`{key}` must be a number, got {value!r}") from exc
    if number < 0:
        raise ConfigError(f"`{key}` must be >= 0, got {number}")
    return number


def _to_words(value: object, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        words = value.split()
    elif isinstance(value, (list, tuple)):
        words = [str(item).strip() for item in value]
    else:
        raise ConfigError(f"`{key}` must be a list or a space-separated string")
    return tuple(word for word in words if word)


def _to_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _read_yaml(path: str | Path) -> dict[str, object]:
    config_path = Path(path).expanduser().resolve()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return {str(key).lower(): value for key, value in raw.items()}


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Build the run configuration.

    Precedence, lowest first: built-in defaults, the optional YAML file,
    environment variables (upper-cased keys, e.g. ``RETRY_COUNT``).
    """
    env = os.environ if environ is None else environ
    raw = _read_yaml(path) if path is not None else {}

    def get(key: str, default: object) -> object:
        value = _lookup(raw, env, key)
        return default if value is None else value

    upload_key = str(get("upload_key", "")).strip()
    if not upload_key:
        raise ConfigError("An upload key is required; set UPLOAD_KEY")

    boards = _to_words(get("boards", DEFAULT_BOARDS), "boards")
    if not boards:
        raise ConfigError("`boards` must name at least one board")

    state_names = _to_words(get("states", [state.value for state in DEFAULT_STATES]), "states")
    if not state_names:
        raise ConfigError("`states` must name at least one status")
    states: list[Status] = []
    for name in state_names:
        try:
            states.append(Status(name.upper()))
        except ValueError as exc:
            allowed = ", ".join(status.value for status in Status)
            raise ConfigError(f"Unknown status {name!r}; expected one of: {allowed}") from exc

    render = RenderConfig(
        block_width=_to_int(get("block_width", 30), "block_width", minimum=1),
        width=_to_int(get("width", 3000), "width", minimum=1),
        height=_to_int(get("height", 2500), "height", minimum=1),
    )

    discovery_raw = get("discovery_retry_count", None)
    retry = RetryConfig(
        retry_count=_to_int(get("retry_count", 3), "retry_count", minimum=0),
        retry_sleep=_to_float(get("retry_sleep", 2.0), "retry_sleep"),
        discovery_retry_count=(
            None
            if discovery_raw is None
            else _to_int(discovery_raw, "discovery_retry_count", minimum=0)
        ),
        request_timeout=_to_float(get("request_timeout", 60.0), "request_timeout"),
    )
    if retry.request_timeout <= 0:
        raise ConfigError("`request_timeout` must be > 0")

    endpoints = EndpointsConfig(
        testgrid_url=str(get("testgrid_url", DEFAULT_TESTGRID_URL)).rstrip("/"),
        render_url=str(get("render_url", DEFAULT_RENDER_URL)).rstrip("/"),
        upload_url=str(get("upload_url", DEFAULT_UPLOAD_URL)),
    )

    log_file_raw = get("log_file", None)
    return AppConfig(
        upload_key=upload_key,
        boards=boards,
        states=tuple(states),
        render=render,
        retry=retry,
        endpoints=endpoints,
        log_file=Path(str(log_file_raw)).expanduser() if log_file_raw else None,
        debug=_to_bool(get("debug", False)),
    )
