"""Configuration management for the certctl application."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

class Config:
    """Application configuration with sensible defaults."""

    # Local directories
    BACKUP_BASE_DIR: str = os.getenv("CERTCTL_BACKUP_BASE_DIR", ".")
    PERSISTENT_CERT_DIR: str = os.getenv(
        "CERTCTL_PERSISTENT_CERT_DIR",
        str(Path("~/.certctl/certificates").expanduser())
    )

    # Cluster API reachability
    API_RETRIES: int = int(os.getenv("CERTCTL_API_RETRIES", "5"))
    API_RETRY_DELAY: float = float(os.getenv("CERTCTL_API_RETRY_DELAY", "10"))
    # Seconds a single API request may take
    API_REQUEST_TIMEOUT: float = float(os.getenv("CERTCTL_API_REQUEST_TIMEOUT", "30"))

    # SSH
    SSH_PORT: int = int(os.getenv("CERTCTL_SSH_PORT", "22"))
    SSH_CONNECT_TIMEOUT: int = int(os.getenv("CERTCTL_SSH_CONNECT_TIMEOUT", "30"))
    SSH_CONTAINER: str = os.getenv("CERTCTL_SSH_CONTAINER", "")

    # Seconds static pods stay stopped during a control-plane restart
    POD_RESTART_DELAY: int = int(os.getenv("CERTCTL_POD_RESTART_DELAY", "20"))

    # Cached etcd client certificates older than this are reported
    CACHE_STALE_WARN_DAYS: int = int(os.getenv("CERTCTL_CACHE_STALE_WARN_DAYS", "30"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("passphrase", "password", "passwd", "secret", "token", "key")

    @classmethod
    def validate(cls) -> None:
        """Validate numeric settings."""
        if cls.API_RETRIES < 1:
            raise ValueError("CERTCTL_API_RETRIES must be at least 1")
        if cls.API_REQUEST_TIMEOUT <= 0:
            raise ValueError("CERTCTL_API_REQUEST_TIMEOUT must be positive")
        if cls.SSH_CONNECT_TIMEOUT <= 0:
            raise ValueError("CERTCTL_SSH_CONNECT_TIMEOUT must be positive")
