# Purpose: Runtime settings from configs/app.yaml with environment overrides.
from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field

log = logging.getLogger("oncocheck.config")

DEFAULT_CONFIG_PATH = "configs/app.yaml"


class Settings(BaseModel):
    db_path: str = Field("data/oncology.db", description="SQLite file holding guidelines and run history.")
    benchmark_dir: str = "data/benchmark"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    log_level: str = "INFO"
    trials_ttl_hours: float = 24.0
    rules_path: str = "configs/rules.yaml"

    @property
    def llm_enabled(self) -> bool:
        return bool(self.openai_api_key)


def _load_yaml(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return data


# env var -> settings field
_ENV = {
    "ONCO_DB_PATH": "db_path",
    "ONCO_BENCHMARK_DIR": "benchmark_dir",
    "OPENAI_API_KEY": "openai_api_key",
    "OPENAI_MODEL": "openai_model",
    "ONCO_LOG_LEVEL": "log_level",
    "ONCO_TRIALS_TTL_HOURS": "trials_ttl_hours",
    "ONCO_RULES_PATH": "rules_path",
}


def load_settings(path: str | None = None) -> Settings:
    raw = _load_yaml(path or os.getenv("ONCO_CONFIG", DEFAULT_CONFIG_PATH))
    for env_key, field_name in _ENV.items():
        value = os.getenv(env_key)
        if value is not None and value.strip():
            raw[field_name] = value.strip()
    settings = Settings(**raw)
    log.debug("settings loaded: db=%s model=%s llm=%s", settings.db_path, settings.openai_model, settings.llm_enabled)
    return settings


def configure_logging(settings: Settings | None = None) -> None:
    level = (settings.log_level if settings else "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
