from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

TrustLevelName = Literal["untrusted", "basic", "trusted", "verified"]


def _default_runtime_dir() -> Path:
    raw = os.environ.get("CARESYNC_HOME", "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".caresync"


PROJECT_ROOT = _default_runtime_dir()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"
AUDIT_LOG_PATH = RUNTIME_DIR / "audit.jsonl"


class SyncConfig(BaseModel):
    # Identical enqueues inside this window collapse into one queue item.
    debounce_window_sec: float = Field(default=2.0, ge=0, le=3600)
    max_retries: int = Field(default=3, ge=1, le=50)
    backoff_base_sec: float = Field(default=1.0, ge=0)
    backoff_cap_sec: float = Field(default=300.0, ge=0)
    backoff_jitter_ratio: float = Field(default=0.1, ge=0, le=1)
    # 0 means disabled; positive values are seconds between periodic syncs.
    periodic_interval_sec: int = Field(default=60, ge=0, le=86400)
    max_queue_size: int = Field(default=1000, ge=1)
    # Strategy used when a synchronizer resolves a conflict on its own:
    # - last_write_wins: newer updated_at wins the whole record
    # - field_level_merge: per-field newest value, remote wins on overlap
    # - manual_merge / user_prompt: always defer to the user
    default_conflict_strategy: Literal[
        "last_write_wins", "field_level_merge", "manual_merge", "user_prompt"
    ] = "last_write_wins"
    resolution_history_limit: int = Field(default=50, ge=1)
    resolution_history_retention_sec: int = Field(default=86400, ge=0)
    # More pending conflicts than this flips sync health from warning to error.
    health_error_threshold: int = Field(default=5, ge=0)


class CredentialConfig(BaseModel):
    required_trust: dict[str, TrustLevelName] = Field(default_factory=lambda: {
        "api_key": "basic",
        "call_agent_id": "basic",
        "sms_agent_id": "basic",
        "mfa_secret": "trusted",
        "backup_codes": "trusted",
    })
    # Fields without an explicit entry need at least this level.
    default_required_trust: TrustLevelName = "trusted"
    encryption_key_file: str = str(RUNTIME_DIR / "credential.key")


class StoreConfig(BaseModel):
    backend: Literal["memory", "rest"] = "memory"
    base_url: str = ""
    api_key: str = ""
    timeout_sec: int = Field(default=30, ge=1, le=600)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")
    # Empty string routes audit events to the "audit" logger only.
    audit_file: str = str(AUDIT_LOG_PATH)


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "sync.db")


class AppConfig(BaseModel):
    sync: SyncConfig = Field(default_factory=SyncConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Status API
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765
    # Client networks allowed to reach the API; CARESYNC_ALLOWED_NETS overrides.
    web_allowed_nets: list[str] = Field(default_factory=lambda: ["127.0.0.1/32", "::1/128"])


def expand_paths(cfg: AppConfig) -> AppConfig:
    cfg.database.path = str(Path(cfg.database.path).expanduser())
    cfg.logging.file = str(Path(cfg.logging.file).expanduser())
    if cfg.logging.audit_file:
        cfg.logging.audit_file = str(Path(cfg.logging.audit_file).expanduser())
    cfg.credentials.encryption_key_file = str(Path(cfg.credentials.encryption_key_file).expanduser())
    return cfg


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = expand_paths(AppConfig.model_validate(data))
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = expand_paths(AppConfig.model_validate(data))
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
