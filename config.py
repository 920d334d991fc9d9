import logging

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Remote Repository (authoritative licenses.json)
    GITHUB_REPO_OWNER: str = "ncdathwb"
    GITHUB_REPO_NAME: str = "ManagementLicense"
    GITHUB_REPO_BRANCH: str = "main"
    GITHUB_TOKEN: str = ""
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_RAW_URL: str = "https://raw.githubusercontent.com"
    GITHUB_USER_AGENT: str = "License-Manager-Pro"
    LICENSES_PATH: str = "licenses.json"

    # Local Copies
    STATIC_LICENSES_PATH: str = "licenses.json"  # Bundled fallback, read once at startup
    LICENSES_FILE_PATH: str = "licenses.json"    # Working copy, read on every request

    # Cache
    CACHE_BACKEND: str = "sql"  # kv, sql or none
    CACHE_KEY: str = "licenses"
    KV_REST_API_URL: str = ""
    KV_REST_API_TOKEN: str = ""
    DATABASE_URL: str = "sqlite:///./license_cache.db"
    CACHE_REFRESH_INTERVAL_MINUTES: int = 0  # 0 disables the mirror job

    # Per-origin Timeouts (seconds)
    CACHE_TIMEOUT: float = 3.0
    FILE_TIMEOUT: float = 2.0
    REMOTE_API_TIMEOUT: float = 5.0
    REMOTE_RAW_TIMEOUT: float = 7.0

    # Evaluation
    EXPIRING_SOON_DAYS: int = 7
    MESSAGE_LOCALE: str = "en"

    # Service
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @property
    def remote_timeout(self) -> float:
        """Upper bound for the remote origin, which may try the API then the raw URL."""
        return self.REMOTE_API_TIMEOUT + self.REMOTE_RAW_TIMEOUT

settings = Settings()


def configure_logging(level: str = None, force: bool = False) -> None:
    """Initialise the root logger once; pass ``force=True`` to reconfigure."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=force,
    )
