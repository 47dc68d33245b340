import base64
import logging
import os
import stat
from datetime import datetime, timedelta, timezone

import pytest
import yaml

from certctl.modules.certificates.errors import StagingError
from certctl.modules.certificates.staging import CertificateStaging
from fakes import CERT, KEY


def test_create_names_workspace_by_timestamp(tmp_path):
    staging = CertificateStaging.create(tmp_path, tmp_path / "cache", now=datetime(2024, 3, 5, 14, 7, 9))
    assert staging.name == "certificate_backup_20240305_140709"
    assert staging.etcd_certs_dir.is_dir()
    assert stat.S_IMODE(staging.etcd_certs_dir.stat().st_mode) == 0o700


def test_write_then_read(staging):
    staging.write_etcd_client_certs(CERT.decode(), KEY)
    assert staging.has_etcd_client_certs()
    assert staging.read_etcd_client_certs() == (CERT, KEY)
    assert stat.S_IMODE(staging.key_path.stat().st_mode) == 0o600
    assert stat.S_IMODE(staging.cert_path.stat().st_mode) == 0o600


def test_encoded_pair(staging):
    staging.write_etcd_client_certs(CERT, KEY)
    assert staging.encoded_etcd_client_certs() == (
        base64.b64encode(CERT).decode(),
        base64.b64encode(KEY).decode(),
    )


def test_read_before_write_fails(staging):
    assert not staging.has_etcd_client_certs()
    with pytest.raises(StagingError, match="read certificate file"):
        staging.read_etcd_client_certs()


def test_empty_values_rejected(staging):
    with pytest.raises(StagingError, match="etcd certificate file is empty"):
        staging.write_etcd_client_certs("", KEY)
    with pytest.raises(StagingError, match="etcd key file is empty"):
        staging.write_etcd_client_certs(CERT, "  \n")


def test_empty_staged_file_rejected(staging):
    staging.cert_path.write_bytes(b"")
    staging.key_path.write_bytes(KEY)
    with pytest.raises(StagingError, match="certificate file is empty"):
        staging.read_etcd_client_certs()


def test_persistent_cache_round_trip(tmp_path, cache_dir):
    first = CertificateStaging.create(tmp_path / "run1", cache_dir)
    first.write_etcd_client_certs(CERT, KEY)
    first.save_certs_to_persistent_storage("mgmt")
    first.cleanup()

    metadata = yaml.safe_load((cache_dir / "etcd-certs" / "metadata.yaml").read_text())
    assert metadata["cluster"] == "mgmt"

    second = CertificateStaging.create(tmp_path / "run2", cache_dir)
    second.load_certs_from_persistent_storage()
    assert second.read_etcd_client_certs() == (CERT, KEY)
    assert second.cached_at() is not None


def test_load_from_empty_cache(staging):
    with pytest.raises(StagingError, match="no etcd certificates found in persistent storage"):
        staging.load_certs_from_persistent_storage()


def test_stale_cache_is_reported(tmp_path, cache_dir, caplog):
    first = CertificateStaging.create(tmp_path / "run1", cache_dir)
    first.write_etcd_client_certs(CERT, KEY)
    first.save_certs_to_persistent_storage("mgmt")
    old = datetime.now(timezone.utc) - timedelta(days=90)
    metadata_file = cache_dir / "etcd-certs" / "metadata.yaml"
    metadata_file.write_text(yaml.safe_dump({"cluster": "mgmt", "saved_at": old.isoformat()}))

    second = CertificateStaging.create(tmp_path / "run2", cache_dir)
    with caplog.at_level(logging.WARNING, logger="certctl.staging"):
        second.load_certs_from_persistent_storage()
    assert "saved 90 days ago" in caplog.text
    assert second.has_etcd_client_certs()


def test_cleanup_removes_read_only_tree(staging):
    staging.write_etcd_client_certs(CERT, KEY)
    nested = staging.backup_dir / "locked"
    nested.mkdir()
    (nested / "file").write_text("x")
    os.chmod(nested / "file", 0o400)
    os.chmod(nested, 0o500)
    os.chmod(staging.key_path, 0o400)

    staging.cleanup()
    assert not staging.backup_dir.exists()
    staging.cleanup()
