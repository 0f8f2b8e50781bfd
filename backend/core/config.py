"""
Foresight Engine Configuration

Uses pydantic-settings for type-safe environment variable loading.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

DEFAULT_REDACTION_SALT = "dev-redaction-salt-change-in-production"

# Find .env file: check CWD first, then parent (project root)
_env_file = Path(".env")
if not _env_file.exists():
    _parent_env = Path(__file__).resolve().parent.parent.parent / ".env"
    if _parent_env.exists():
        _env_file = _parent_env


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Foresight"
    app_version: str = "1.0.0"
    app_env: str = "local"
    debug: bool = False
    random_seed: int = 42

    # Event bus
    event_history_size: int = 500

    # ── Predictive (forecasting) ─────────────────────────────────────
    ingestion_sources: list[str] = ["internal:kpi", "internal:ops"]
    forecast_model_version: str = "1.0.0"

    # Serving
    serving_cache_ttl_seconds: float = 60.0
    serving_latency_budget_seconds: float = 2.0
    serving_latency_window: int = 200

    # Drift (PSI / KS between baseline and current batch)
    drift_psi_warning: float = 0.10
    drift_psi_drifted: float = 0.25
    drift_ks_pvalue: float = 0.01
    drift_min_samples: int = 20

    # Decay (rolling MAPE of realized vs forecast)
    decay_mape_threshold: float = 0.25
    decay_window: int = 5
    decay_min_samples: int = 3

    # ── Prescriptive (decisioning) ───────────────────────────────────
    optimizer_max_iterations: int = 30
    optimizer_batch_size: int = 4
    optimizer_max_workers: int = 0  # 0 → os.cpu_count()
    scenario_default_samples: int = 50
    scenario_default_strategy: str = "triangular"
    explanation_top_k: int = 3

    # Security
    redaction_salt: str = DEFAULT_REDACTION_SALT

    model_config = {
        "env_file": str(_env_file),
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    settings = Settings()
    _enforce_security_guardrails(settings)
    return settings


def is_local_env(app_env: str) -> bool:
    env = app_env.strip().lower()
    return env in {"", "local", "dev", "development", "test"}


def _enforce_security_guardrails(settings: Settings) -> None:
    if is_local_env(settings.app_env):
        return

    if settings.debug:
        raise ValueError("Refusing to start with debug=true outside local/dev/test")
    if settings.redaction_salt == DEFAULT_REDACTION_SALT:
        raise ValueError("Refusing to start with default redaction salt outside local/dev/test")
