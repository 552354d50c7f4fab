import logging
import os
from typing import Optional

from pydantic import BaseModel, Field


class LedgerSettings(BaseModel):
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)
    sync_timeout_seconds: float = Field(default=30.0, gt=0)
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, prefix: str = "LEDGER_") -> "LedgerSettings":
        def env(name: str, default: Optional[str] = None) -> Optional[str]:
            return os.getenv(f"{prefix}{name}", default)

        defaults = cls()
        origins = env("CORS_ORIGINS")
        return cls(
            default_page_size=int(env("DEFAULT_PAGE_SIZE", str(defaults.default_page_size))),
            max_page_size=int(env("MAX_PAGE_SIZE", str(defaults.max_page_size))),
            sync_timeout_seconds=float(env("SYNC_TIMEOUT_SECONDS", str(defaults.sync_timeout_seconds))),
            log_level=env("LOG_LEVEL", defaults.log_level).upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()] if origins else defaults.cors_origins,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
