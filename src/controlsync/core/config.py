from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .diagnostics import DEFAULT_LOG_FILE, LOG_FILE_ENV
from .errors import ConfigError
from .transport import DEFAULT_BASE_URL


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None


@dataclass
class ApiSection:
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""        # secret – never log in clear text
    org_id: str = ""
    verify_tls: bool = True
    timeout_sec: float = 60.0


@dataclass
class DiagnosticsSection:
    log_file: str = DEFAULT_LOG_FILE


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class StateSection:
    path: str = "./controlsync.state.json"
    manifest: str = "./controlsync.manifest.yml"


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    api: ApiSection
    diagnostics: DiagnosticsSection
    logging: LoggingSection
    state: StateSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./controlsync.yml",
    os.path.expanduser("~/.config/controlsync/config.yml"),
    "/etc/controlsync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None},
    "api": {
        "base_url": DEFAULT_BASE_URL,
        "api_key": "",
        "org_id": "",
        "verify_tls": True,
        "timeout_sec": 60.0,
    },
    "diagnostics": {"log_file": DEFAULT_LOG_FILE},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
    "state": {"path": "./controlsync.state.json", "manifest": "./controlsync.manifest.yml"},
}

# Canonical platform variables, mapped onto config keys.
_PLATFORM_ENV: Dict[str, Tuple[str, str]] = {
    "KUBIYA_CONTROL_PLANE_BASE_URL": ("api", "base_url"),
    "KUBIYA_CONTROL_PLANE_API_KEY": ("api", "api_key"),
    "KUBIYA_CONTROL_PLANE_ORG_ID": ("api", "org_id"),
    LOG_FILE_ENV: ("diagnostics", "log_file"),
}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _env_to_dict(prefix: str = "CSYNC_") -> Dict[str, Any]:
    """
    Convert CSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _platform_env() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for var, (section, key) in _PLATFORM_ENV.items():
        val = os.environ.get(var)
        if val:
            out.setdefault(section, {})[key] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans and numbers in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        if key_path[-1:] == ("verify_tls",):
            return to_bool(obj)
        if key_path[-1:] == ("timeout_sec",):
            try:
                return float(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"{'.'.join(key_path)} must be a number, got {obj!r}") from None
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    """
    Validate the fields every API-backed command needs.
    """
    missing = []
    if not cfg.get("api", {}).get("base_url"):
        missing.append("api.base_url")
    if not cfg.get("api", {}).get("api_key"):
        missing.append("api.api_key (or KUBIYA_CONTROL_PLANE_API_KEY)")
    if missing:
        raise ConfigError(
            "Missing required configuration: " + ", ".join(missing)
        )


def _section(cls: type, data: Dict[str, Any], name: str) -> Any:
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigError(f"Invalid '{name}' section: {exc}") from None


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "CSYNC_",
    *,
    dotenv: bool = True,
    require_api: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix CSYNC_, nested via __)
      3) Platform variables (KUBIYA_CONTROL_PLANE_*, KUBIYA_API_LOG_FILE)
      4) YAML file (first existing)
      5) Built-in defaults

    A `.env` file found from the working directory is loaded first; it never
    overrides variables already set in the process environment.

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/float)
      - validation of the API fields unless `require_api` is False
        (offline commands such as `csync show`)
    """
    if dotenv:
        env_path = find_dotenv(usecwd=True) or ""
        if env_path:
            load_dotenv(env_path, override=False)

    file_cfg = _load_first_existing(files)

    # defaults <- file <- platform env <- prefixed env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, _platform_env())
    merged = _deep_merge(merged, _env_to_dict(env_prefix))
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    if require_api:
        _validate(merged)

    return AppConfig(
        app=_section(AppSection, merged.get("app", {}), "app"),
        api=_section(ApiSection, merged.get("api", {}), "api"),
        diagnostics=_section(DiagnosticsSection, merged.get("diagnostics", {}), "diagnostics"),
        logging=_section(LoggingSection, merged.get("logging", {}), "logging"),
        state=_section(StateSection, merged.get("state", {}), "state"),
    )
