"""Worker configuration read from the environment (and an optional .env file)."""
import random
import string
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DEFAULTS


def _random_worker_id() -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "worker-" + "".join(random.choices(alphabet, k=6))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Queue connection
    worker_store: Literal["supabase", "sqlite"] = "supabase"
    supabase_url: str = ""
    supabase_service_key: str = ""
    sunrunctl_home: Path = Path.home() / ".sunrunctl"

    # Loop pacing, milliseconds
    worker_polling_delay: int = DEFAULTS["polling_delay_ms"]
    worker_rate_limit_delay: int = DEFAULTS["rate_limit_delay_ms"]
    worker_max_attempts: int = DEFAULTS["max_attempts"]
    worker_id: str = Field(default_factory=_random_worker_id)

    # Upstream
    upstream_base_url: str = "https://app.xtotoro.com/app/"
    upstream_timeout: float = 30.0
    upstream_rsa_key_path: Optional[Path] = None

    @field_validator("worker_rate_limit_delay", "worker_polling_delay")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, v)

    @field_validator("worker_max_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(1, v)

    @property
    def db_path(self) -> Path:
        return self.sunrunctl_home / "queue.db"

    @property
    def polling_delay_seconds(self) -> float:
        return self.worker_polling_delay / 1000

    @property
    def rate_limit_delay_seconds(self) -> float:
        return self.worker_rate_limit_delay / 1000

    def missing_connection_settings(self) -> List[str]:
        missing = []
        if self.worker_store == "supabase":
            if not self.supabase_url:
                missing.append("SUPABASE_URL")
            if not self.supabase_service_key:
                missing.append("SUPABASE_SERVICE_KEY")
        if self.upstream_rsa_key_path is None:
            missing.append("UPSTREAM_RSA_KEY_PATH")
        return missing
