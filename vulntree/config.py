"""Application configuration using Pydantic settings."""

import os
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Scan service
    SCAN_URL: str = "http://localhost:8046/api/v1"
    SCAN_TOKEN: Optional[str] = None
    SCAN_TIMEOUT: float = Field(45.0, gt=0, description="HTTP timeout in seconds")
    SCAN_MODE: Literal["components", "graph"] = "components"
    PAGE_SIZE: int = Field(100, gt=0, description="Components sent per scan request")

    # Impact paths
    IMPACT_PATHS_LIMIT: int = Field(20, gt=0, description="Paths recorded per issue and component")

    # Scan cache
    CACHE_DIR: str = os.path.join("~", ".cache", "vulntree")
    CACHE_TTL_SECONDS: int = Field(7 * 24 * 60 * 60, ge=0, description="Cache entry validity")

    # Build tools
    COMMAND_TIMEOUT: float = Field(300.0, gt=0, description="Build tool timeout in seconds")
    PYTHON_PATH: str = "python"
    NUGET_COMMAND: str = "nuget-deps-tree"
    EXCLUDE_DIRS: List[str] = [
        "node_modules", ".git", ".hg", ".svn", ".venv", "venv", "env",
        "__pycache__", "target", "build", "dist", "vendor", "bin", "obj",
    ]

    # Logging
    LOG_FILE: str = "debug.log"
    LOG_LEVEL: str = "DEBUG"

    model_config = SettingsConfigDict(
        env_prefix="VULNTREE_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("LOG_LEVEL")
    def validate_log_level(cls, v: str) -> str:
        """Accept only the level names understood by logging."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def cache_path(self) -> str:
        return os.path.join(os.path.expanduser(self.CACHE_DIR), "scan-cache.json")


settings = Settings()
