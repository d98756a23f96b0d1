"""Layered configuration for the archiver.

Configuration is resolved once at startup from an ordered list of providers
(by default the config file, then ``ARCHIVER_*`` environment variables) and
frozen into an :class:`ArchiverConfig`. Later providers win per key; nested
sections are merged key by key.

Example (TOML)::

    log = "info"

    [server]
    addr = "0.0.0.0:8080"

    [bus]
    url = "nats://localhost:4222"

    [s3]
    endpoint = "http://localhost:9000"
    region = "us-east-1"
    access = "${S3_ACCESS_KEY}"
    secret = "${S3_SECRET_KEY}"
    strict = true

    [[store]]
    name = "orders"
    subject = "orders.created"
    bucket = "archive"
    prefix = "orders"
    codec = "zstd"
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import yaml

from .jobs import RetrySettings, StoreJob, parse_bool
from .object_store import DEFAULT_REGION, S3Settings

DEFAULT_CONFIG_PATH = Path("/etc/archiver/config.toml")
DEFAULT_SERVER_ADDR = "0.0.0.0:8080"
ENV_PREFIX = "ARCHIVER_"

_LOG_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class ConfigError(Exception):
    """Raised when configuration cannot be read or does not validate."""


class ConfigProvider(Protocol):
    def load(self) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class ServerSettings:
    addr: str = DEFAULT_SERVER_ADDR

    @property
    def host_port(self) -> Tuple[str, int]:
        host, sep, port = self.addr.rpartition(":")
        if not sep:
            raise ConfigError(f"server.addr must be host:port, got {self.addr!r}")
        try:
            return host or "0.0.0.0", int(port)
        except ValueError as exc:
            raise ConfigError(f"server.addr has an invalid port: {self.addr!r}") from exc


@dataclass(frozen=True)
class BusSettings:
    url: str
    factory: Optional[str] = None


@dataclass(frozen=True)
class ArchiverConfig:
    """Immutable configuration shared by every store job."""

    bus: BusSettings
    s3: S3Settings
    server: ServerSettings = field(default_factory=ServerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    store: Tuple[StoreJob, ...] = ()
    log: Optional[str] = None


# Placeholder handling: ${VAR} or ${VAR:default} inside string values.
def _find_placeholder_end(text: str, start_idx: int) -> int:
    end = text.find("}", start_idx)
    if end == -1:
        raise ConfigError(f"Unclosed placeholder in {text!r}")
    return end


def _substitute_placeholder(placeholder: str, environ: Mapping[str, str]) -> str:
    var, sep, default = placeholder.partition(":")
    if var in environ:
        return environ[var]
    if sep:
        return default
    raise ConfigError(f"Missing environment variable {var} for placeholder in config")


def _replace_placeholders(text: str, environ: Mapping[str, str]) -> str:
    result: List[str] = []
    idx = 0
    while idx < len(text):
        if not text.startswith("${", idx):
            result.append(text[idx])
            idx += 1
            continue
        end = _find_placeholder_end(text, idx)
        result.append(_substitute_placeholder(text[idx + 2 : end], environ))
        idx = end + 1
    return "".join(result)


def _substitute_env(value: Any, environ: Mapping[str, str]) -> Any:
    if isinstance(value, dict):
        return {k: _substitute_env(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env(v, environ) for v in value]
    if isinstance(value, str):
        return _replace_placeholders(value, environ)
    return value


class FileProvider:
    """Reads a TOML (``.toml``) or YAML (``.yaml``/``.yml``) config file."""

    def __init__(self, path: Path, environ: Mapping[str, str] | None = None) -> None:
        self.path = Path(path)
        self._environ = environ if environ is not None else os.environ

    def load(self) -> Dict[str, Any]:
        suffix = self.path.suffix.lower()
        if suffix not in {".toml", ".yaml", ".yml"}:
            raise ConfigError(f"Unsupported config format {suffix or '<none>'!r}; use .toml, .yaml, or .yml")
        try:
            text = self.path.read_text()
        except OSError as exc:
            raise ConfigError(f"Cannot read config file {self.path}: {exc}") from exc

        loaded: Any
        try:
            if suffix == ".toml":
                loaded = tomllib.loads(text)
            else:
                loaded = yaml.safe_load(text) or {}
        except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
            raise ConfigError(f"Malformed config file {self.path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {self.path} must contain a mapping at the top level")
        return _substitute_env(loaded, self._environ)


class EnvProvider:
    """Maps ``<prefix>SECTION_KEY=value`` variables to nested ``{"section": {"key": value}}``."""

    def __init__(self, prefix: str = ENV_PREFIX, split: str = "_", environ: Mapping[str, str] | None = None) -> None:
        self.prefix = prefix
        self.split = split
        self._environ = environ if environ is not None else os.environ

    def load(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for name, value in self._environ.items():
            if not name.startswith(self.prefix):
                continue
            parts = [p.lower() for p in name[len(self.prefix) :].split(self.split) if p]
            if not parts:
                continue
            node = result
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
        return result


def merge_layers(layers: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Merge mappings in order; later layers win per key, nested mappings merge recursively."""

    merged: Dict[str, Any] = {}
    for layer in layers:
        _merge_into(merged, layer)
    return merged


def _list_index(name: Any) -> int:
    text = str(name)
    if not text.isdigit():
        raise ConfigError(f"store job index must be an integer, got {name!r}")
    return int(text)


def _merge_indexed(target: List[Any], layer: Mapping[str, Any]) -> None:
    # Env overlays address list items by index ("store_0_prefix").
    for name in sorted(layer, key=_list_index):
        index = _list_index(name)
        value = layer[name]
        if index < len(target):
            if isinstance(target[index], dict) and isinstance(value, Mapping):
                _merge_into(target[index], value)
            else:
                target[index] = value
        elif index == len(target):
            target.append(_copy_mapping(value) if isinstance(value, Mapping) else value)
        else:
            raise ConfigError(f"store job index {index} skips past the end of the list ({len(target)} jobs)")


def _copy_mapping(value: Mapping[str, Any]) -> Dict[str, Any]:
    copied: Dict[str, Any] = {}
    _merge_into(copied, value)
    return copied


def _merge_into(target: Dict[str, Any], layer: Mapping[str, Any]) -> None:
    for name, value in layer.items():
        current = target.get(name)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        elif isinstance(current, list) and isinstance(value, Mapping):
            merged = [dict(item) if isinstance(item, dict) else item for item in current]
            _merge_indexed(merged, value)
            target[name] = merged
        elif isinstance(value, Mapping):
            target[name] = {}
            _merge_into(target[name], value)
        else:
            target[name] = value


def default_providers(path: Path | None = None, environ: Mapping[str, str] | None = None) -> List[ConfigProvider]:
    return [
        FileProvider(path or DEFAULT_CONFIG_PATH, environ=environ),
        EnvProvider(ENV_PREFIX, "_", environ=environ),
    ]


def load_config(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    providers: Sequence[ConfigProvider] | None = None,
) -> ArchiverConfig:
    """Resolve providers once and return the frozen configuration."""

    chosen = providers if providers is not None else default_providers(path, environ)
    raw = merge_layers([provider.load() for provider in chosen])
    return config_from_mapping(raw)


def _section(raw: Mapping[str, Any], name: str, *, required: bool) -> Mapping[str, Any]:
    value = raw.get(name)
    if value is None:
        if required:
            raise ConfigError(f"Missing required config section {name!r}")
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section {name!r} must be a mapping")
    return value


def _s3_from_mapping(raw: Mapping[str, Any]) -> S3Settings:
    try:
        return S3Settings(
            endpoint=raw.get("endpoint") or None,
            region=str(raw.get("region") or DEFAULT_REGION),
            access_key=raw.get("access"),
            secret_key=raw.get("secret"),
            strict=parse_bool(raw.get("strict", True)),
            connect_timeout=float(raw.get("connect_timeout", 5.0)),
            read_timeout=float(raw.get("read_timeout", 30.0)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid s3 section: {exc}") from exc


def _jobs_from_raw(raw: Any) -> Tuple[StoreJob, ...]:
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        # Env overlays produce mappings keyed by index ("store_0_bucket").
        raw = [raw[k] for k in sorted(raw, key=_list_index)]
    if not isinstance(raw, list):
        raise ConfigError("Config key 'store' must be a list of store jobs")

    jobs: List[StoreJob] = []
    names: set[str] = set()
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise ConfigError(f"Store job #{index} must be a mapping")
        try:
            job = StoreJob.from_mapping(item)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid store job #{index}: {exc}") from exc
        if job.name in names:
            raise ConfigError(f"Duplicate store job name {job.name!r}")
        names.add(job.name)
        jobs.append(job)
    return tuple(jobs)


def config_from_mapping(raw: Mapping[str, Any]) -> ArchiverConfig:
    bus_raw = _section(raw, "bus", required=True)
    if not bus_raw.get("url"):
        raise ConfigError("Missing required config key 'bus.url'")
    server_raw = _section(raw, "server", required=False)
    retry_raw = _section(raw, "retry", required=False)

    try:
        retry = RetrySettings.from_mapping(retry_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid retry section: {exc}") from exc

    log = raw.get("log")
    return ArchiverConfig(
        log=str(log) if log is not None else None,
        server=ServerSettings(addr=str(server_raw.get("addr", DEFAULT_SERVER_ADDR))),
        bus=BusSettings(url=str(bus_raw["url"]), factory=bus_raw.get("factory")),
        s3=_s3_from_mapping(_section(raw, "s3", required=True)),
        retry=retry,
        store=_jobs_from_raw(raw.get("store")),
    )


def log_level(config: ArchiverConfig) -> int:
    """Translate the configured level name to a :mod:`logging` level (INFO when unset or unknown)."""

    return _LOG_LEVELS.get((config.log or "INFO").strip().upper(), logging.INFO)
