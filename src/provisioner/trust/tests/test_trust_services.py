"""
本地信任库服务测试：仅替换 subprocess，不触碰真实系统信任库。
"""

import subprocess
from unittest.mock import patch

import pytest

from src.provisioner.errors import TrustImportError
from src.provisioner.trust import services
from src.provisioner.trust.schemas import Platform, StoreLocation


@pytest.fixture
def cert_file(tmp_path, self_signed_pem):
    path = tmp_path / "RootCA.crt"
    path.write_bytes(self_signed_pem)
    return path


@patch("subprocess.run")
def test_certutil_store_names(mock_run, cert_file):
    mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")
    store = services.CertutilTrustStore()

    store.import_certificate(cert_file, StoreLocation.ROOT)
    store.import_certificate(cert_file, StoreLocation.INTERMEDIATE)

    commands = [c.args[0] for c in mock_run.call_args_list]
    assert commands[0] == ["certutil", "-addstore", "-f", "Root", str(cert_file)]
    assert commands[1] == ["certutil", "-addstore", "-f", "CA", str(cert_file)]


@patch("subprocess.run")
def test_certutil_permission_failure(mock_run, cert_file):
    mock_run.return_value = subprocess.CompletedProcess([], 5, "", "Access is denied.")

    with pytest.raises(TrustImportError) as ei:
        services.CertutilTrustStore().import_certificate(cert_file, StoreLocation.ROOT)
    assert "Access is denied." in ei.value.message
    assert ei.value.context["returncode"] == 5


@patch("subprocess.run")
def test_linux_store_copies_and_updates(mock_run, tmp_path, cert_file):
    mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")
    anchors = tmp_path / "anchors"
    store = services.LinuxTrustStore(anchors, tmp_path / "intermediate")

    store.import_certificate(cert_file, StoreLocation.ROOT)

    assert (anchors / "provisioner-root" / "RootCA.crt").read_bytes() == cert_file.read_bytes()
    assert mock_run.call_args.args[0] == ["update-ca-certificates"]


@patch("subprocess.run")
def test_linux_intermediate_is_not_a_trust_anchor(mock_run, tmp_path, cert_file):
    anchors = tmp_path / "anchors"
    intermediates = tmp_path / "intermediate"
    store = services.LinuxTrustStore(anchors, intermediates)

    store.import_certificate(cert_file, StoreLocation.INTERMEDIATE)

    assert (intermediates / "RootCA.crt").read_bytes() == cert_file.read_bytes()
    assert not anchors.exists()
    mock_run.assert_not_called()


def test_invalid_certificate_is_rejected(tmp_path):
    bad = tmp_path / "bad.crt"
    bad.write_text("garbage")

    with pytest.raises(TrustImportError):
        services.CertutilTrustStore().import_certificate(bad, StoreLocation.ROOT)


def test_missing_certificate_is_rejected(tmp_path):
    with pytest.raises(TrustImportError):
        services.LinuxTrustStore(tmp_path).import_certificate(tmp_path / "none.crt", StoreLocation.ROOT)


def test_get_trust_store_by_platform():
    assert isinstance(services.get_trust_store(Platform.WINDOWS), services.CertutilTrustStore)
    assert isinstance(services.get_trust_store(Platform.LINUX), services.LinuxTrustStore)
    with pytest.raises(ValueError):
        services.get_trust_store(Platform.MACOS)


def test_ensure_elevated(monkeypatch):
    monkeypatch.setattr(services, "is_elevated", lambda: False)
    with pytest.raises(TrustImportError):
        services.ensure_elevated()

    monkeypatch.setattr(services, "is_elevated", lambda: True)
    services.ensure_elevated()
