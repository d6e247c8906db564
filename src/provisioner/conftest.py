"""
测试公共夹具：内存版管理 API、记录调用的信任库、测试证书生成。
"""

import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Tuple

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding

from src.provisioner.admin_api.schemas import (
    CAConfig,
    CAConfigRequest,
    CertIssuerRequest,
    CertProfileRequest,
    CsrGeneratorRequest,
    KeyStore,
    Team,
)
from src.provisioner.errors import (
    AuthenticationError,
    AuthorizationUpdateError,
    CAConfigError,
    GeneratorCreationError,
    IssuerCreationError,
    IssuerNotFoundError,
    KeyStoreCreationError,
    OCSPBindingError,
    ProfileCreationError,
    TeamUpdateError,
)
from src.provisioner.trust.core import load_certificate_file
from src.provisioner.trust.schemas import StoreLocation


def make_ca_certificate(
    subject_dn: str,
    issuer: Tuple[ec.EllipticCurvePrivateKey, x509.Certificate] | None = None,
) -> Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    """生成 CA 证书；issuer 为空时自签。"""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name.from_rfc4514_string(subject_dn)
    signing_key, issuer_name = (key, subject) if issuer is None else (issuer[0], issuer[1].subject)
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                key_cert_sign=True,
                crl_sign=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(private_key=signing_key, algorithm=hashes.SHA256())
    )
    return key, cert


class FakeAdminApi:
    """内存中的管理 API：名称冲突、签发者引用与并发版本都按真实服务的方式报错。"""

    def __init__(self, username: str = "admin", password: str = "password") -> None:
        self.username = username
        self.password = password
        self.unreachable = False
        self.fail_logout = False
        self.token: str | None = None
        self.login_calls = 0
        self.logout_calls = 0
        self._ids = itertools.count(1)
        self.key_stores: Dict[str, KeyStore] = {}
        self.ca_configs: Dict[str, CAConfigRequest] = {}
        self.ca_keys: Dict[str, Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]] = {}
        self.ocsp_bound: set[str] = set()
        self.profiles: Dict[str, CertProfileRequest] = {}
        self.issuers: Dict[str, CertIssuerRequest] = {}
        self.generators: Dict[str, CsrGeneratorRequest] = {}
        self.teams: Dict[str, Team] = {
            "Administrators": Team(id="team-1", name="Administrators", authorised_cas=["existing-issuer"], version=1)
        }

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _require_session(self) -> None:
        if not self.token:
            raise AuthenticationError("未登录")

    def login(self, username: str, password: str) -> str:
        self.login_calls += 1
        if self.unreachable:
            raise httpx.ConnectError("Connection refused")
        if (username, password) != (self.username, self.password):
            raise AuthenticationError("管理员凭据无效", entity=username)
        self.token = self._next_id("token")
        return self.token

    def logout(self) -> None:
        self.logout_calls += 1
        if self.fail_logout:
            raise AuthenticationError("登出失败")
        self.token = None

    def create_key_store(self, name: str, password: str) -> KeyStore:
        self._require_session()
        if name in self.key_stores:
            raise KeyStoreCreationError("名称冲突，实体已存在", entity=name, context={"status": 409})
        ks = KeyStore(id=self._next_id("ks"), name=name)
        self.key_stores[name] = ks
        return ks

    def create_local_ca_config(self, request: CAConfigRequest) -> CAConfig:
        self._require_session()
        if any(r.name == request.name for r in self.ca_configs.values()):
            raise CAConfigError("名称冲突，实体已存在", entity=request.name)
        issuer = None
        if request.issuer_ca_id is not None:
            if request.issuer_ca_id not in self.ca_keys:
                raise IssuerNotFoundError("签发者 CA 不存在", entity=request.name)
            issuer = self.ca_keys[request.issuer_ca_id]
        ca_id = self._next_id("ca")
        key, cert = make_ca_certificate(request.subject_dn, issuer)
        self.ca_configs[ca_id] = request
        self.ca_keys[ca_id] = (key, cert)
        return CAConfig(id=ca_id, certificate=cert.public_bytes(Encoding.PEM).decode("utf-8"))

    def set_ocsp_for_local_ca(self, ca_id: str) -> None:
        self._require_session()
        if ca_id not in self.ca_configs or ca_id in self.ocsp_bound:
            raise OCSPBindingError("无法绑定 OCSP", entity=ca_id)
        self.ocsp_bound.add(ca_id)

    def create_cert_profile(self, request: CertProfileRequest) -> str:
        self._require_session()
        if any(p.name == request.name for p in self.profiles.values()):
            raise ProfileCreationError("名称冲突", entity=request.name)
        pid = self._next_id("profile")
        self.profiles[pid] = request
        return pid

    def create_local_ca(self, request: CertIssuerRequest) -> str:
        self._require_session()
        if any(i.name == request.name for i in self.issuers.values()):
            raise IssuerCreationError("名称冲突", entity=request.name)
        iid = self._next_id("issuer")
        self.issuers[iid] = request
        return iid

    def create_csr_generator(self, request: CsrGeneratorRequest) -> str:
        self._require_session()
        if any(g.name == request.name for g in self.generators.values()):
            raise GeneratorCreationError("名称冲突", entity=request.name)
        gid = self._next_id("gen")
        self.generators[gid] = request
        return gid

    def get_team(self, name: str) -> Team:
        self._require_session()
        if name not in self.teams:
            raise TeamUpdateError("团队不存在", entity=name)
        return self.teams[name]

    def update_team(self, team: Team, authorised_cas: List[str]) -> Team:
        self._require_session()
        current = self.teams[team.name]
        if current.version != team.version:
            raise AuthorizationUpdateError("团队已被并发修改", entity=team.name)
        updated = current.model_copy(
            update={"authorised_cas": list(authorised_cas), "version": (current.version or 0) + 1}
        )
        self.teams[team.name] = updated
        return updated


class RecordingTrustStore:
    """记录导入调用，并解析证书以便断言主体 DN。"""

    def __init__(self) -> None:
        self.entries: List[Tuple[Path, StoreLocation, str]] = []

    def import_certificate(self, path: Path, location: StoreLocation) -> None:
        cert = load_certificate_file(path)
        self.entries.append((Path(path), location, cert.subject.rfc4514_string()))

    def subjects(self, location: StoreLocation) -> List[str]:
        return [subject for _, loc, subject in self.entries if loc == location]


@pytest.fixture
def fake_api() -> FakeAdminApi:
    return FakeAdminApi()


@pytest.fixture
def trust_store() -> RecordingTrustStore:
    return RecordingTrustStore()


@pytest.fixture
def self_signed_pem() -> bytes:
    _, cert = make_ca_certificate("CN=Fixture Root,O=Org")
    return cert.public_bytes(Encoding.PEM)


@pytest.fixture
def make_ca():
    """返回 CA 证书生成函数，签名与 make_ca_certificate 相同。"""
    return make_ca_certificate
