"""
Server configuration from environment variables (prefix CART_).
All settings are optional with safe defaults.
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _openshift_repo_path() -> Optional[Path]:
    """Bare repository location used by OpenShift gears."""
    home = os.environ.get("OPENSHIFT_HOMEDIR")
    app_name = os.environ.get("OPENSHIFT_APP_NAME")
    if home and app_name:
        return Path(home) / "git" / f"{app_name}.git"
    return None


class Settings(BaseSettings):
    """Process-wide settings. Read once by create_app(), never by core components."""

    model_config = SettingsConfigDict(env_prefix="CART_", extra="ignore")

    repo_path: Optional[Path] = None
    data_dir: Path = Path("data")
    password: Optional[SecretStr] = None  # Never logged
    queue_capacity: int = Field(default=4, ge=1, le=64)
    build_timeout: int = Field(default=1800, ge=1)
    command_timeout: int = Field(default=60, ge=1)
    log_level: str = "INFO"
    public_base_url: Optional[str] = None
    default_ref: str = "master"

    @model_validator(mode="after")
    def _default_repo_path(self) -> "Settings":
        if self.repo_path is None:
            self.repo_path = _openshift_repo_path() or Path.cwd()
        return self

    @property
    def build_root(self) -> Path:
        return self.data_dir / "builds"

    @property
    def builds_enabled(self) -> bool:
        """Build trigger requires a configured password."""
        return self.password is not None and bool(self.password.get_secret_value())


@lru_cache
def get_settings() -> Settings:
    """Load settings from the environment (cached)."""
    return Settings()
