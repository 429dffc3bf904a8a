from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

DEFAULT_FTP_PORT = 21
DEFAULT_SFTP_PORT = 22
DEFAULT_REMOTE_TIMEOUT = 30.0
DEFAULT_SYNC_WORKERS = 4
DEFAULT_SYNC_RETRIES = 2
DEFAULT_RETRY_DELAY = 1.0

DEFAULT_REPO_DIR = Path("./repo")
DEFAULT_BUILD_DIR = Path("./repo/public")
DEFAULT_MIRROR_DIR = Path("./currentFTP")

DEFAULT_PULL_COMMAND = "git pull"
DEFAULT_INSTALL_COMMAND = "npm install"
DEFAULT_BUILD_COMMAND = "gatsby build"


class DeploySettings(BaseSettings):
    """Deployment configuration read from the environment and `.env`."""

    remote_protocol: Literal["ftp", "sftp", "local"] = "ftp"
    remote_host: str | None = None
    remote_port: int | None = Field(default=None, ge=1, le=65535)
    remote_user: str | None = None
    remote_password: str | None = None
    remote_secure: bool = False
    remote_root: str = "/"
    remote_timeout: float = Field(default=DEFAULT_REMOTE_TIMEOUT, gt=0)

    repo_dir: Path = DEFAULT_REPO_DIR
    build_dir: Path = DEFAULT_BUILD_DIR
    mirror_dir: Path = DEFAULT_MIRROR_DIR
    pull_command: str = DEFAULT_PULL_COMMAND
    install_command: str = DEFAULT_INSTALL_COMMAND
    build_command: str = DEFAULT_BUILD_COMMAND
    skip_build: bool = False

    compare_content: bool = False
    sync_workers: int = Field(default=DEFAULT_SYNC_WORKERS, ge=1, le=32)
    sync_retries: int = Field(default=DEFAULT_SYNC_RETRIES, ge=0, le=10)
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0)

    notify_email: str | None = None
    notify_sender: str | None = None
    notify_smtp_host: str | None = None
    notify_smtp_port: int | None = None

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @field_validator("remote_root")
    @classmethod
    def forward_slash_root(cls, v: str) -> str:
        return v.replace("\\", "/") or "/"

    @property
    def resolved_port(self) -> int:
        if self.remote_port is not None:
            return self.remote_port
        return DEFAULT_SFTP_PORT if self.remote_protocol == "sftp" else DEFAULT_FTP_PORT

    def require_host(self) -> str:
        if not self.remote_host:
            raise ConfigError(f"REMOTE_HOST is required for {self.remote_protocol}")
        return self.remote_host


def load_settings(env_file: Path | None = None) -> DeploySettings:
    try:
        if env_file is not None:
            return DeploySettings(_env_file=env_file)
        return DeploySettings()
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
