from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- workspace ----
    temp_root: Path = Path(tempfile.gettempdir()) / "codesandbox-executions"

    # ---- timing (seconds) ----
    max_execution_s: float = 30.0
    compile_timeout_s: float = 30.0
    initial_settle_s: float = 0.3
    input_settle_s: float = 0.5
    retain_grace_s: float = 60.0

    # ---- service ----
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    # ---- config files ----
    limits_file: Path = Path("conf/limits.yaml")

    # ---- runtime merged values (read from YAML) ----
    limits: Dict[str, Any] = {}
    languages: Dict[str, Any] = {}

    # env prefix SBX_*
    model_config = SettingsConfigDict(env_prefix="SBX_", extra="ignore")


def _ms(value: Any, fallback: float) -> float:
    return float(value) / 1000.0 if value is not None else fallback


def load_settings() -> Settings:
    # 0) base values from SBX_* env
    s = Settings()

    # 1) conf/sandbox.yaml (or SANDBOX_CONF)
    sbx_yaml = os.environ.get("SANDBOX_CONF", "conf/sandbox.yaml")
    try:
        with open(sbx_yaml, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        defaults = {}

    server = data.get("server") or {}
    if not isinstance(server, dict):
        server = {}

    languages = data.get("languages") or {}
    if not isinstance(languages, dict):
        languages = {}

    # 2) merge into Settings with explicit types
    s = s.model_copy(
        update={
            "temp_root": Path(str(data.get("temp_root", s.temp_root))),
            "max_execution_s": float(defaults.get("timeout_s", s.max_execution_s)),
            "compile_timeout_s": float(defaults.get("compile_timeout_s", s.compile_timeout_s)),
            "initial_settle_s": _ms(defaults.get("initial_settle_ms"), s.initial_settle_s),
            "input_settle_s": _ms(defaults.get("input_settle_ms"), s.input_settle_s),
            "retain_grace_s": float(defaults.get("retain_grace_s", s.retain_grace_s)),
            "host": str(server.get("host", s.host)),
            "port": int(server.get("port", s.port)),
            "log_level": str(data.get("log_level", s.log_level)).upper(),
            "languages": {**s.languages, **languages},
        }
    )

    # 3) conf/limits.yaml (optional)
    limits: Dict[str, Any] = {}
    try:
        if s.limits_file.exists():
            limits_raw = yaml.safe_load(s.limits_file.read_text(encoding="utf-8")) or {}
            if isinstance(limits_raw, dict):
                limits = limits_raw
    except (OSError, yaml.YAMLError):
        # a broken limits file must not take the service down
        limits = {}

    s = s.model_copy(update={"limits": limits})
    return s
