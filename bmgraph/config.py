"""Load pipeline config from TOML (bmgraph.toml) and the environment.

Config file is looked up in order:
  1. Path in BMGRAPH_CONFIG env var (if set)
  2. bmgraph.toml in the current working directory

Only the ``[pipeline]`` table is read. Environment variables then override
individual values. Missing, unparseable or non-positive values fall back to
the built-in defaults.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field

from bmgraph.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./bmgraph.db"

_ENV_VARS = {
    "queue_concurrency": "QUEUE_CONCURRENCY",
    "retry_base_delay_seconds": "RETRY_BASE_DELAY_SECONDS",
    "retry_max_delay_seconds": "RETRY_MAX_DELAY_SECONDS",
    "retry_max_attempts": "RETRY_MAX_ATTEMPTS",
    "fetch_timeout_seconds": "FETCH_TIMEOUT_SECONDS",
    "llm_timeout_seconds": "LLM_TIMEOUT_SECONDS",
    "llm_model": "LLM_MODEL",
    "llm_vision_model": "LLM_VISION_MODEL",
    "ollama_host": "OLLAMA_HOST",
    "database_url": "DATABASE_URL",
}


class PipelineConfig(BaseModel, frozen=True):
    """Runtime settings for the ingestion workers."""

    queue_concurrency: int = Field(default=2, description="Messages processed concurrently per queue.")
    retry_base_delay_seconds: float = Field(default=2.0, description="First retry delay.")
    retry_max_delay_seconds: float = Field(default=30.0, description="Cap on any retry delay.")
    retry_max_attempts: int = Field(default=3, description="Deliveries before dead-lettering.")
    fetch_timeout_seconds: float = Field(default=15.0, description="Page and image fetch timeout.")
    llm_timeout_seconds: float = Field(default=120.0, description="Timeout for one LLM call.")
    llm_model: str = Field(default="llama3.1:8b", description="Model for summaries and text entities.")
    llm_vision_model: str = Field(default="llava:13b", description="Multimodal model for image entities.")
    ollama_host: str = Field(default="http://localhost:11434", description="Ollama server URL.")
    database_url: str = Field(default=DEFAULT_DATABASE_URL, description="SQLAlchemy database URL.")

    def retry_policy(self) -> RetryPolicy:
        """Backoff policy for the queue workers."""
        return RetryPolicy(
            base_delay_seconds=self.retry_base_delay_seconds,
            max_delay_seconds=max(self.retry_max_delay_seconds, self.retry_base_delay_seconds),
            max_concurrency=self.queue_concurrency,
            max_attempts=self.retry_max_attempts,
        )


def _default_config_paths() -> list[Path]:
    """Return paths to check for bmgraph.toml (first existing wins)."""
    paths: list[Path] = []
    if os.environ.get("BMGRAPH_CONFIG"):
        paths.append(Path(os.environ["BMGRAPH_CONFIG"]))
    paths.append(Path.cwd() / "bmgraph.toml")
    return paths


def _load_toml_section() -> dict[str, Any]:
    for path in _default_config_paths():
        if path.is_file():
            try:
                with open(path, "rb") as f:
                    data = tomllib.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Ignoring unreadable config file %s: %s", path, e)
                continue
            section = data.get("pipeline")
            return section if isinstance(section, dict) else {}
    return {}


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a raw config value to the type of its default, or None if invalid."""
    if isinstance(default, str):
        value = str(raw).strip()
        return value or None
    try:
        value = int(raw) if isinstance(default, int) else float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %r; using default %r", name, raw, default)
        return None
    if value <= 0:
        logger.warning("Non-positive value for %s: %r; using default %r", name, raw, default)
        return None
    return value


def load_pipeline_config(environ: Mapping[str, str] | None = None) -> PipelineConfig:
    """Build a PipelineConfig from the TOML file and environment variables."""
    environ = os.environ if environ is None else environ
    defaults = PipelineConfig()
    values: dict[str, Any] = {}

    for name, raw in _load_toml_section().items():
        if name not in _ENV_VARS:
            continue
        value = _coerce(name, raw, getattr(defaults, name))
        if value is not None:
            values[name] = value

    for name, env_var in _ENV_VARS.items():
        raw = environ.get(env_var)
        if raw is None:
            continue
        value = _coerce(env_var, raw, getattr(defaults, name))
        if value is not None:
            values[name] = value

    return PipelineConfig(**values)
