from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from waypoint.idempotency import OnLocked, Policy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WAYPOINT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_DSN: str = "sqlite+aiosqlite:///./waypoint.db"
    CREATE_TABLES: bool = True
    LOG_LEVEL: str = "INFO"

    # Idempotency locking
    LOCK_STALE_SECONDS: float = 30.0  # must exceed the slowest stage
    ON_LOCKED: Literal["wait", "fail"] = "fail"
    LOCK_WAIT_SECONDS: float = 10.0
    LOCK_POLL_SECONDS: float = 0.1

    def policy(self) -> Policy:
        return (
            Policy()
            .with_stale_lock_after(seconds=self.LOCK_STALE_SECONDS)
            .with_on_locked(OnLocked.WAIT if self.ON_LOCKED == "wait" else OnLocked.FAIL)
            .with_wait_timeout(seconds=self.LOCK_WAIT_SECONDS)
            .with_poll_interval(seconds=self.LOCK_POLL_SECONDS)
        )
