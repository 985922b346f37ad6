# settings.py
from datetime import timedelta
from typing import List, Optional

from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

# Load variables from .env at import time
load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    # Empty key disables the bearer check entirely. Only for local testing.
    render_api_key: str = Field(default=os.getenv("RENDER_API_KEY", ""))
    host: str = Field(default=os.getenv("HOST", "0.0.0.0"))
    port: int = Field(default=int(os.getenv("PORT", "10000")))
    completion_threshold_s: float = Field(default=float(os.getenv("RENDER_COMPLETION_THRESHOLD_S", "60")))
    job_store: str = Field(default=os.getenv("JOB_STORE", "memory").lower())  # memory | sqlite
    database_url: str = Field(default=os.getenv("DATABASE_URL", "sqlite:///./render_jobs.db"))
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))
    debug: bool = Field(default=_env_flag("DEBUG"))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO").upper())

    @property
    def auth_required(self) -> bool:
        return bool(self.render_api_key)

    @property
    def completion_threshold(self) -> Optional[timedelta]:
        """Simulated render time, or None when a real worker reports completion."""
        if self.completion_threshold_s <= 0:
            return None
        return timedelta(seconds=self.completion_threshold_s)

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

settings = Settings()
