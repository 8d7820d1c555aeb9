"""Runtime settings for the honey drops ledger.

Values come from init kwargs, then ``HONEY_*`` environment variables, then
the defaults below.
"""

from functools import lru_cache
from uuid import UUID

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HoneySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HONEY_", frozen=True)

    bid_fee: int = Field(default=3, gt=0, description="Honey drops reserved per job application")
    lock_timeout: float = Field(default=0.05, gt=0, description="Seconds to wait for one lock attempt")
    max_attempts: int = Field(default=5, ge=1, description="Lock attempts before raising BusyError")
    backoff_base: float = Field(default=0.01, ge=0, description="First backoff delay, doubled per attempt")
    admin_ids: frozenset[UUID] = Field(default_factory=frozenset)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    verbose: bool = False
    log_json: bool = False


@lru_cache(maxsize=1)
def get_settings() -> HoneySettings:
    return HoneySettings()
