from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
import os
import yaml


@dataclass(frozen=True)
class Settings:
    # Paths
    log_dir: str = "./logs"
    report_dir: str = "./reports"

    # Logging / report
    log_level: str = "INFO"
    report_csv: bool = True
    report_items_limit: int | None = None
    dry_run: bool = False

    # HTTP / transport
    timeout_seconds: float = 20.0
    retries: int = 3
    retry_backoff_seconds: float = 0.5
    tls_skip_verify: bool = False
    ca_file: str | None = None

    # Microsoft Graph
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    graph_token: str | None = None

    # Active Directory (LDAP)
    ldap_host: str | None = None
    ldap_port: int | None = None
    ldap_use_ssl: bool = True
    ldap_username: str | None = None
    ldap_password: str | None = None
    ldap_base_dn: str | None = None
    ldap_search_scope: str = "SUBTREE"

    # vSphere
    vsphere_host: str | None = None
    vsphere_port: int = 443
    vsphere_username: str | None = None
    vsphere_password: str | None = None


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    sources_used: list[str]


_BOOL_FIELDS = {"report_csv", "dry_run", "tls_skip_verify", "ldap_use_ssl"}
_INT_FIELDS = {"report_items_limit", "retries", "ldap_port", "vsphere_port"}
_FLOAT_FIELDS = {"timeout_seconds", "retry_backoff_seconds"}


def _read_yaml_config(path: Path) -> dict:
    if not path.exists() or not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data


def _env_get(name: str) -> str | None:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def _env_name(field_name: str) -> str:
    return f"BULKRECON_{field_name.upper()}"


def parse_bool(v: str) -> bool:
    vv = v.lower()
    if vv in ("1", "true", "yes", "y"):
        return True
    if vv in ("0", "false", "no", "n"):
        return False
    raise ValueError(f"Invalid boolean env value: {v}")


def _parse_env_value(field_name: str, raw: str):
    if field_name in _BOOL_FIELDS:
        return parse_bool(raw)
    if field_name in _INT_FIELDS:
        return int(raw)
    if field_name in _FLOAT_FIELDS:
        return float(raw)
    return raw


def loadSettings(
    config_path: str | None,
    cli_overrides: dict,
) -> LoadedSettings:
    """
    Priority: CLI > ENV (BULKRECON_*) > config > defaults
    """
    sources: list[str] = []
    defaults = Settings()
    names = [f.name for f in fields(Settings)]

    # 1) config file
    cfg: dict = {}
    if config_path:
        cfg = _read_yaml_config(Path(config_path))
        if cfg:
            sources.append("config")

    merged = {name: cfg.get(name, getattr(defaults, name)) for name in names}

    # 2) env
    env = {name: _env_get(_env_name(name)) for name in names}
    if any(v is not None for v in env.values()):
        sources.append("env")
    for name, raw in env.items():
        if raw is not None:
            merged[name] = _parse_env_value(name, raw)

    # 3) CLI overrides (only those explicitly passed)
    if any(v is not None for v in cli_overrides.values()):
        sources.append("cli")
    for k, v in cli_overrides.items():
        if v is None:
            continue
        if k not in merged:
            raise ValueError(f"Unknown setting: {k}")
        merged[k] = v

    for name in _BOOL_FIELDS:
        merged[name] = bool(merged[name])

    return LoadedSettings(settings=Settings(**merged), sources_used=sources)
