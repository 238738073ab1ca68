import logging
import os
from functools import lru_cache
from typing import Optional
from pydantic import BaseModel, Field

ENV_PREFIX = "POS_DISCOUNTS_"


class Settings(BaseModel):
    api_base: str = "http://127.0.0.1:5000"
    auth_token: Optional[str] = None
    request_timeout: float = 10.0

    max_combo_size: int = Field(default=3, ge=1)
    auto_apply: bool = True

    vat_enabled: bool = False
    vat_percent: float = 0.0
    currency: str = "AED"

    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Read POS_DISCOUNTS_<FIELD> variables; unset ones keep their defaults."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
