import os
import sys

from pydantic_settings import BaseSettings

from . import APP_NAME


def default_home_dir() -> str:
    if sys.platform.startswith("win"):
        base = os.environ.get("LOCALAPPDATA") or os.path.expanduser("~")
        return os.path.join(base, APP_NAME)
    return os.path.join("/var", APP_NAME)


class Settings(BaseSettings):
    # Base directory holding etc/, repo/ and log/
    home_dir: str = ""

    # Logging
    log_level: str = "INFO"
    log_max_files: int = 10
    log_max_size: int = 10000000

    # Spawner
    spawner_max_workers: int = 50

    # Config snapshots kept under etc/
    config_max_files: int = 10

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def base_dir(self) -> str:
        return self.home_dir or default_home_dir()

    @property
    def config_path_prefix(self) -> str:
        return os.path.join(self.base_dir, "etc", APP_NAME + ".conf.")

    @property
    def repository_path(self) -> str:
        return os.path.join(self.base_dir, "repo")

    @property
    def log_path_prefix(self) -> str:
        return os.path.join(self.base_dir, "log", APP_NAME + ".log")


settings = Settings()
