import logging
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Identity provider (HS/RS-signed bearer tokens)
    JWT_SECRET_KEY: Optional[str] = None
    JWT_ALGORITHMS: str = "HS256"

    # Document store; unset means the in-process store
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None

    # Free plan caps; Pro is always unbounded
    FREE_PERSONAL_PROMPT_LIMIT: int = 10
    FREE_TEAM_PROMPT_LIMIT: int = 10

    MEMBERSHIP_MAX_RETRIES: int = 5

    TAXONOMY_MAX_WORKERS: int = 8
    TAG_MAX_LENGTH: int = 20
    ADMIN_USER_IDS: str = ""

    AUDIT_ENABLED: bool = True
    AUDIT_SAMPLE_RATE: float = 1.0


settings = Settings()

REQUIRED_KEYS = ("DATABASE_URL", "JWT_SECRET_KEY", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def split_csv(value: Optional[str]) -> List[str]:
    """Comma-separated setting -> list of non-empty stripped items."""
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _config_problems(cfg) -> List[str]:
    problems = []
    missing = [key for key in REQUIRED_KEYS if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if cfg.FREE_PERSONAL_PROMPT_LIMIT < 0 or cfg.FREE_TEAM_PROMPT_LIMIT < 0:
        problems.append("Free plan prompt limits must be non-negative")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj=None, logger: Optional[logging.Logger] = None) -> bool:
    """Check required keys and limit sanity.

    Strict mode raises RuntimeError on the first report; otherwise each problem
    is logged as a warning. Only key names are reported, never values.
    """
    cfg = settings_obj or settings
    if strict is None:
        strict = bool(getattr(cfg, "CONFIG_STRICT", False))
    log = logger or logging.getLogger("promptpro.config")

    problems = _config_problems(cfg)
    if problems and strict:
        raise RuntimeError("; ".join(problems))
    for problem in problems:
        log.warning(problem)
    return True
