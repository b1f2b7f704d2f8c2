"""
Fault Injector Configuration Management
========================================
Handles config loading, listener/TLS settings, and platform-specific paths.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from platformdirs import user_config_dir, user_data_dir

APP_NAME = "http-fault-injector"

# ── paths ────────────────────────────────────────────────────────────────────

CONFIG_DIR = Path(user_config_dir(APP_NAME))
DATA_DIR = Path(user_data_dir(APP_NAME))
LOGS_DIR = DATA_DIR / "logs"
CONFIG_FILE = CONFIG_DIR / "config.yaml"


def ensure_dirs() -> None:
    """Create all required directories."""
    for d in (CONFIG_DIR, DATA_DIR, LOGS_DIR):
        d.mkdir(parents=True, exist_ok=True)


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "listener": {
        "host": "0.0.0.0",
        "http_port": 7777,
        "https_port": 7778,
        "cert_file": "",
        "key_file": "",
        "cert_password": "",
    },
    "upstream": {
        "verify_tls": True,
        "timeout": None,
    },
    "logging": {
        "level": "INFO",
        "to_file": True,
        "file_name": "faultinjector.log",
    },
    "ui": {
        "show_banner": True,
    },
}


@dataclass
class ListenerConfig:
    host: str = "0.0.0.0"
    http_port: int = 7777
    https_port: Optional[int] = 7778
    cert_file: str = ""
    key_file: str = ""
    cert_password: str = ""

    @property
    def tls_enabled(self) -> bool:
        return bool(self.https_port and self.cert_file)


@dataclass
class UpstreamConfig:
    verify_tls: bool = True
    timeout: Optional[float] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"
    to_file: bool = True
    file_name: str = "faultinjector.log"

    @property
    def log_path(self) -> Optional[Path]:
        return LOGS_DIR / self.file_name if self.to_file else None


@dataclass
class UIConfig:
    show_banner: bool = True


@dataclass
class FaultInjectorConfig:
    listener: ListenerConfig = field(default_factory=ListenerConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    ui: UIConfig = field(default_factory=UIConfig)


def load_config(path: Optional[Path] = None) -> FaultInjectorConfig:
    """Load configuration from disk, env vars, and defaults."""
    ensure_dirs()
    config_file = path or CONFIG_FILE
    raw: Dict[str, Any] = {}

    if config_file.exists():
        with open(config_file) as f:
            raw = yaml.safe_load(f) or {}

    # Merge with defaults
    merged = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), raw)

    # Env-var overrides
    listener = merged["listener"]
    if os.environ.get("FAULTINJECTOR_HOST"):
        listener["host"] = os.environ["FAULTINJECTOR_HOST"]
    if os.environ.get("FAULTINJECTOR_HTTP_PORT"):
        listener["http_port"] = int(os.environ["FAULTINJECTOR_HTTP_PORT"])
    if os.environ.get("FAULTINJECTOR_HTTPS_PORT"):
        listener["https_port"] = int(os.environ["FAULTINJECTOR_HTTPS_PORT"])
    if os.environ.get("FAULTINJECTOR_CERT_FILE"):
        listener["cert_file"] = os.environ["FAULTINJECTOR_CERT_FILE"]
    if os.environ.get("FAULTINJECTOR_KEY_FILE"):
        listener["key_file"] = os.environ["FAULTINJECTOR_KEY_FILE"]
    if os.environ.get("FAULTINJECTOR_CERT_PASSWORD"):
        listener["cert_password"] = os.environ["FAULTINJECTOR_CERT_PASSWORD"]
    if os.environ.get("FAULTINJECTOR_UPSTREAM_TIMEOUT"):
        merged["upstream"]["timeout"] = float(os.environ["FAULTINJECTOR_UPSTREAM_TIMEOUT"])
    if os.environ.get("FAULTINJECTOR_LOG_LEVEL"):
        merged["logging"]["level"] = os.environ["FAULTINJECTOR_LOG_LEVEL"].upper()

    cfg = FaultInjectorConfig(
        listener=ListenerConfig(**merged.get("listener", {})),
        upstream=UpstreamConfig(**merged.get("upstream", {})),
        logging=LoggingConfig(**merged.get("logging", {})),
        ui=UIConfig(**merged.get("ui", {})),
    )
    return cfg


def save_config(cfg: FaultInjectorConfig, path: Optional[Path] = None) -> Path:
    """Persist current configuration to disk."""
    ensure_dirs()
    config_file = path or CONFIG_FILE
    data = {
        "listener": {
            "host": cfg.listener.host,
            "http_port": cfg.listener.http_port,
            "https_port": cfg.listener.https_port,
            "cert_file": cfg.listener.cert_file,
            "key_file": cfg.listener.key_file,
            "cert_password": cfg.listener.cert_password,
        },
        "upstream": {
            "verify_tls": cfg.upstream.verify_tls,
            "timeout": cfg.upstream.timeout,
        },
        "logging": {
            "level": cfg.logging.level,
            "to_file": cfg.logging.to_file,
            "file_name": cfg.logging.file_name,
        },
        "ui": {
            "show_banner": cfg.ui.show_banner,
        },
    }
    with open(config_file, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    return config_file


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result
