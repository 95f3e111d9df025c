import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Asaas (REST-style provider)
    ASAAS_API_KEY: Optional[str] = None
    ASAAS_API_URL: str = "https://api.asaas.com/v3"
    ASAAS_WEBHOOK_TOKEN: Optional[str] = None

    # PagSeguro / PagBank (order/charge provider)
    PAGSEGURO_APP_KEY: Optional[str] = None
    PAGSEGURO_TOKEN: Optional[str] = None
    PAGSEGURO_SANDBOX: bool = False
    PAGSEGURO_WEBHOOK_TOKEN: Optional[str] = None

    # Remote status queries must finish well inside the host request budget
    REMOTE_STATUS_TIMEOUT_SECONDS: float = 5.0

    # Settlement
    DEFAULT_PLAN_DURATION_DAYS: int = 30
    PLAN_TIMEZONE: str = "America/Sao_Paulo"
    RECONCILE_BATCH_LIMIT: int = 100

    # Admin access (X-Admin-Key)
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def pagseguro_key(cfg: Optional[Settings] = None) -> Optional[str]:
    """App key wins over the legacy token; blank values count as missing."""
    cfg = cfg or settings
    key = cfg.PAGSEGURO_APP_KEY or cfg.PAGSEGURO_TOKEN
    if key and key.strip():
        return key.strip()
    return None


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("pixsettle")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    missing = []
    if not cfg.DATABASE_URL:
        missing.append("DATABASE_URL")
    if not cfg.ASAAS_API_KEY and not pagseguro_key(cfg):
        missing.append("ASAAS_API_KEY or PAGSEGURO_APP_KEY/PAGSEGURO_TOKEN")

    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
