# util/settings.py
from typing import List

import pytz
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    環境變數設定（欄位名即變數名，不分大小寫）。
    金鑰類沒有預設值；DATABASE_URL 由 util/db.py 直接讀取。
    """

    model_config = SettingsConfigDict(frozen=True, extra="ignore")

    secret_key: str = Field(..., min_length=1)
    fairness_secret: str = Field(..., min_length=1)
    allowed_origins: str = ""

    deal_max_completed: int = Field(100, ge=0)
    deal_claim_ttl: int = Field(60, ge=1)
    deal_settle_interval: int = Field(30, ge=1)

    ledger_timeout_seconds: float = Field(5.0, gt=0)
    ledger_max_attempts: int = Field(3, ge=1)
    ledger_backoff_seconds: float = Field(0.2, ge=0)

    app_tz: str = "UTC"

    @field_validator("app_tz")
    @classmethod
    def _known_tz(cls, v: str) -> str:
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"unknown timezone: {v}")
        return v

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def timezone(self):
        return pytz.timezone(self.app_tz)


def load_settings() -> Settings:
    # 缺少或不合法就直接啟動失敗
    try:
        return Settings()
    except ValidationError as e:
        raise RuntimeError(f"invalid configuration: {e}") from e
