"""Local staging of etcd client certificates.

A renewal run owns a timestamped backup workspace. Etcd renewal writes the
fresh ``apiserver-etcd-client`` pair into it, control-plane renewal reads it
back to push to each control-plane node. A copy is kept in a persistent
cache so a later control-plane-only run can find it.
"""
import base64
import logging
import os
import shutil
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

import yaml

from ...config import Config
from .constants import (
    BACKUP_DIR_PREFIX,
    BACKUP_DIR_TIME_FORMAT,
    ETCD_CERTS_DIR,
    ETCD_CLIENT_CERT_NAME,
    ETCD_CLIENT_KEY_NAME,
    PERSISTENT_ETCD_DIR,
    PERSISTENT_METADATA_FILE,
)
from .errors import CleanupError, StagingError

logger = logging.getLogger("certctl.staging")

PathLike = Union[str, Path]


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)


def _ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    os.chmod(path, 0o700)


def _to_bytes(data: Union[str, bytes]) -> bytes:
    return data.encode() if isinstance(data, str) else data


class CertificateStaging:
    """Backup workspace plus persistent cache for the etcd client pair."""

    def __init__(self, backup_dir: PathLike, persistent_dir: Optional[PathLike] = None):
        self.backup_dir = Path(backup_dir)
        self.persistent_dir = Path(persistent_dir or Config.PERSISTENT_CERT_DIR)

    @classmethod
    def create(cls, base_dir: Optional[PathLike] = None,
               persistent_dir: Optional[PathLike] = None,
               now: Optional[datetime] = None) -> "CertificateStaging":
        """Create a fresh ``certificate_backup_<timestamp>`` workspace under ``base_dir``."""
        now = now or datetime.now()
        base = Path(base_dir or Config.BACKUP_BASE_DIR)
        backup_dir = base / f"{BACKUP_DIR_PREFIX}_{now.strftime(BACKUP_DIR_TIME_FORMAT)}"
        try:
            _ensure_private_dir(backup_dir / ETCD_CERTS_DIR)
        except OSError as e:
            raise StagingError(f"creating backup directory {backup_dir}: {e}") from e
        logger.info(f"Backup workspace: {backup_dir}")
        return cls(backup_dir, persistent_dir)

    @property
    def name(self) -> str:
        """Workspace directory name, used to tag remote backups."""
        return self.backup_dir.name

    @property
    def etcd_certs_dir(self) -> Path:
        return self.backup_dir / ETCD_CERTS_DIR

    @property
    def cert_path(self) -> Path:
        return self.etcd_certs_dir / ETCD_CLIENT_CERT_NAME

    @property
    def key_path(self) -> Path:
        return self.etcd_certs_dir / ETCD_CLIENT_KEY_NAME

    @property
    def cache_dir(self) -> Path:
        return self.persistent_dir / PERSISTENT_ETCD_DIR

    def write_etcd_client_certs(self, cert: Union[str, bytes], key: Union[str, bytes]) -> None:
        """Stage the etcd client pair read from an etcd node.

        Raises:
            StagingError: If either value is empty or a file cannot be written
        """
        cert, key = _to_bytes(cert), _to_bytes(key)
        if not cert.strip():
            raise StagingError("etcd certificate file is empty")
        if not key.strip():
            raise StagingError("etcd key file is empty")

        try:
            _ensure_private_dir(self.etcd_certs_dir)
        except OSError as e:
            raise StagingError(f"creating {self.etcd_certs_dir}: {e}") from e
        try:
            _write_private(self.cert_path, cert)
        except OSError as e:
            raise StagingError(f"writing etcd certificate file: {e}") from e
        try:
            _write_private(self.key_path, key)
        except OSError as e:
            raise StagingError(f"writing etcd key file: {e}") from e
        logger.debug(f"Staged etcd client certificates in {self.etcd_certs_dir}")

    def has_etcd_client_certs(self) -> bool:
        try:
            return self.cert_path.stat().st_size > 0 and self.key_path.stat().st_size > 0
        except OSError:
            return False

    def read_etcd_client_certs(self) -> Tuple[bytes, bytes]:
        """Return the staged (cert, key) bytes.

        Raises:
            StagingError: If a file is missing or empty
        """
        return self._read_pair(self.cert_path, self.key_path)

    @staticmethod
    def _read_pair(cert_path: Path, key_path: Path) -> Tuple[bytes, bytes]:
        try:
            cert = cert_path.read_bytes()
        except OSError as e:
            raise StagingError(f"read certificate file: {e}") from e
        try:
            key = key_path.read_bytes()
        except OSError as e:
            raise StagingError(f"read key file: {e}") from e
        if not cert:
            raise StagingError(f"certificate file is empty: {cert_path}")
        if not key:
            raise StagingError(f"key file is empty: {key_path}")
        return cert, key

    def encoded_etcd_client_certs(self) -> Tuple[str, str]:
        """Staged pair as base64 text for embedding in remote commands."""
        cert, key = self.read_etcd_client_certs()
        return base64.b64encode(cert).decode(), base64.b64encode(key).decode()

    def save_certs_to_persistent_storage(self, cluster_name: str = "") -> None:
        """Copy the staged pair into the persistent cache with a timestamp."""
        cert, key = self.read_etcd_client_certs()
        try:
            _ensure_private_dir(self.cache_dir)
            _write_private(self.cache_dir / ETCD_CLIENT_CERT_NAME, cert)
            _write_private(self.cache_dir / ETCD_CLIENT_KEY_NAME, key)
            metadata = {
                "cluster": cluster_name,
                "saved_at": datetime.now(timezone.utc).isoformat(),
                "source": str(self.backup_dir),
            }
            _write_private(self.cache_dir / PERSISTENT_METADATA_FILE,
                           yaml.safe_dump(metadata, default_flow_style=False).encode())
        except OSError as e:
            raise StagingError(f"save certificates to persistent storage: {e}") from e
        logger.info(f"Saved etcd client certificates to {self.cache_dir}")

    def load_certs_from_persistent_storage(self) -> None:
        """Stage the cached pair from a previous etcd renewal.

        Raises:
            StagingError: If the cache holds no certificates
        """
        cert_path = self.cache_dir / ETCD_CLIENT_CERT_NAME
        key_path = self.cache_dir / ETCD_CLIENT_KEY_NAME
        if not cert_path.exists() or not key_path.exists():
            raise StagingError(
                "no etcd certificates found in persistent storage. "
                "Please run etcd certificate renewal first"
            )
        cert, key = self._read_pair(cert_path, key_path)
        self._report_cache_age()
        self.write_etcd_client_certs(cert, key)
        logger.info(f"Loaded etcd client certificates from {self.cache_dir}")

    def cached_at(self) -> Optional[datetime]:
        """When the cached pair was saved, if recorded."""
        path = self.cache_dir / PERSISTENT_METADATA_FILE
        try:
            with open(path, "r") as f:
                metadata = yaml.safe_load(f) or {}
            return datetime.fromisoformat(str(metadata["saved_at"]))
        except (OSError, KeyError, TypeError, ValueError, yaml.YAMLError):
            return None

    def _report_cache_age(self) -> None:
        saved_at = self.cached_at()
        if saved_at is None:
            logger.warning("⚠️ Cached etcd client certificates have no timestamp")
            return
        age = datetime.now(timezone.utc) - saved_at
        if age.days >= Config.CACHE_STALE_WARN_DAYS:
            logger.warning(
                f"⚠️ Cached etcd client certificates were saved {age.days} days ago "
                f"({saved_at.isoformat()}); renew etcd first if they have since changed"
            )
        else:
            logger.info(f"Using etcd client certificates cached at {saved_at.isoformat()}")

    def cleanup(self) -> None:
        """Remove the workspace, making read-only entries writable first.

        Raises:
            CleanupError: If the workspace cannot be removed
        """
        if not self.backup_dir.exists():
            return
        try:
            os.chmod(self.backup_dir, os.stat(self.backup_dir).st_mode | stat.S_IRWXU)
            for root, dirs, files in os.walk(self.backup_dir):
                for name in dirs + files:
                    path = os.path.join(root, name)
                    if not os.path.islink(path):
                        extra = stat.S_IRWXU if name in dirs else stat.S_IWUSR
                        os.chmod(path, os.stat(path).st_mode | extra)
            shutil.rmtree(self.backup_dir)
        except OSError as e:
            raise CleanupError(f"removing backup directory {self.backup_dir}: {e}") from e
        logger.debug(f"Removed backup workspace {self.backup_dir}")
