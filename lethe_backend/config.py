import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SCHEMES = ["zero", "random", "random2x", "dod", "gost", "vsitr", "badblocks"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LETHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    bin: str = "lethe"
    data_dir: str = "data"
    keys_dir: Optional[str] = None
    schemes: List[str] = Field(default_factory=lambda: list(DEFAULT_SCHEMES))
    sign_certificates: bool = True
    api_key: Optional[str] = None
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_json: bool = True
    jsonl_path: Optional[str] = None
    enumerate_timeout: float = 10.0
    enumerate_retries: int = 1
    stop_grace_seconds: float = 2.0
    observer_queue_size: int = 1000
    host: str = "127.0.0.1"
    port: int = 3001

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.data_dir, "logs")

    @property
    def certs_dir(self) -> str:
        return os.path.join(self.data_dir, "certificates")

    @property
    def signing_keys_dir(self) -> str:
        return self.keys_dir or os.path.join(self.data_dir, "keys")

    def ensure_dirs(self):
        for d in (self.data_dir, self.logs_dir, self.certs_dir):
            os.makedirs(d, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
