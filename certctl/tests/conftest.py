import pytest

from certctl.modules.certificates.staging import CertificateStaging
from certctl.utils.context import RunContext
from fakes import FakeKubeClient, FakeSSHRunner


@pytest.fixture
def ssh():
    return FakeSSHRunner()


@pytest.fixture
def kube():
    return FakeKubeClient()


@pytest.fixture
def ctx():
    return RunContext()


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def staging(tmp_path, cache_dir):
    return CertificateStaging.create(tmp_path / "work", cache_dir)
