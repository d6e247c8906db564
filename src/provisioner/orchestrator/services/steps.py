"""
编排步骤定义。

STEPS 是固定顺序的步骤列表，每个步骤声明名称、描述、执行函数、失败时使用的
异常类型，以及是否为尽力而为（失败仅告警）。步骤之间通过 ProvisioningContext
传递上一步的产出（密钥库、CA 标识、证书等）。
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Any, Callable, List

import httpx
from cryptography import x509
from loguru import logger

from ...admin_api.client import AdminApi, HttpAdminApi, login_with_retry
from ...admin_api.schemas import (
    CAConfig,
    CAConfigRequest,
    CertIssuerRequest,
    CertProfileRequest,
    CrlSettings,
    CsrGeneratorRequest,
    KeyStore,
    PolicyQualifier,
    Team,
)
from ...config import Config
from ...errors import (
    AuthenticationError,
    CAConfigError,
    DownloadError,
    ExtractionError,
    GeneratorCreationError,
    HostResolutionError,
    InstallError,
    IssuerCreationError,
    KeyStoreCreationError,
    OCSPBindingError,
    PrerequisiteInstallError,
    ProfileCreationError,
    ProvisioningError,
    TeamUpdateError,
    TrustImportError,
)
from ...installer import services as installer
from ...trust import services as trust
from ...trust.core import log_certificate_info, persist_certificate
from ...trust.schemas import StoreLocation
from ...trust.services import TrustStore
from . import host


def default_api_factory(config: Config) -> AdminApi:
    """以安装器随附的引导证书作为校验根，创建管理 API 客户端。"""
    return HttpAdminApi(
        config.api_base_url,
        verify=config.bootstrap_certificate_path,
        timeout=config.api_timeout_s,
    )


@dataclass
class ProvisioningContext:
    config: Config
    trust_store: TrustStore | None = None
    api: AdminApi | None = None
    api_factory: Callable[[Config], AdminApi] = default_api_factory
    http_client: httpx.Client | None = None

    logged_in: bool = False
    fqdn: str | None = None
    key_store: KeyStore | None = None
    root_ca: CAConfig | None = None
    root_ca_cert: x509.Certificate | None = None
    intermediate_ca: CAConfig | None = None
    intermediate_ca_cert: x509.Certificate | None = None
    profile_id: str | None = None
    issuer_id: str | None = None
    csr_generator_id: str | None = None
    team: Team | None = None

    def require_api(self) -> AdminApi:
        if self.api is None:
            raise AuthenticationError("尚未建立管理会话")
        return self.api

    def require_trust_store(self) -> TrustStore:
        """未显式传入时按当前平台选择信任库；不支持的平台转为 TrustImportError。"""
        if self.trust_store is None:
            try:
                self.trust_store = trust.get_trust_store()
            except ValueError as e:
                raise TrustImportError(f"当前平台无法导入信任库：{e}", entity=sys.platform) from e
        return self.trust_store

    def require(self, name: str, error: type[ProvisioningError]) -> Any:
        """取前序步骤的产出；缺失时以当前步骤的异常类型报错。"""
        value = getattr(self, name)
        if value is None:
            raise error(f"前序步骤尚未产出 {name}")
        return value


@dataclass
class Step:
    name: str
    description: str
    action: Callable[[ProvisioningContext], None]
    error: type[ProvisioningError]
    best_effort: bool = False
    enabled: Callable[[Config], bool] = field(default=lambda config: True)


def _preflight(ctx: ProvisioningContext) -> None:
    ctx.require_trust_store()
    if ctx.config.require_elevation:
        trust.ensure_elevated()


def _download(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    installer.download_artifact(
        cfg.artifact_url, cfg.download_path, timeout=cfg.download_timeout_s, client=ctx.http_client
    )


def _extract(ctx: ProvisioningContext) -> None:
    installer.extract_artifact(ctx.config.download_path, ctx.config.extract_dir)


def _prerequisite(ctx: ProvisioningContext) -> None:
    installer.run_prerequisite_installer(ctx.config)


def _install(ctx: ProvisioningContext) -> None:
    installer.run_product_installer(ctx.config)


def _bootstrap_trust(ctx: ProvisioningContext) -> None:
    path = ctx.config.bootstrap_certificate_path
    logger.warning(
        f"临时信任安装器随附的引导证书 {path}：这是一项安全相关的信任决定，"
        "安装正式服务证书后应从根信任库中移除该证书"
    )
    ctx.require_trust_store().import_certificate(path, StoreLocation.ROOT)


def _wait_service(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    if not host.probe_service_ready(cfg.api_host, cfg.listen_port, timeout_s=cfg.service_ready_timeout_s):
        raise AuthenticationError(
            f"管理服务在 {cfg.service_ready_timeout_s}s 内未就绪",
            entity=cfg.service_host,
        )


def _login(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    if ctx.api is None:
        ctx.api = ctx.api_factory(cfg)
    login_with_retry(
        ctx.api,
        cfg.admin_username,
        cfg.admin_password.get_secret_value(),
        attempts=cfg.login_retry_attempts,
        backoff_s=cfg.login_retry_backoff_s,
    )
    ctx.logged_in = True
    logger.info(f"已登录管理服务：{cfg.api_base_url}")


def _keystore(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    ctx.key_store = ctx.require_api().create_key_store(
        cfg.keystore_name, cfg.keystore_password.get_secret_value()
    )
    logger.info(f"密钥库已创建：{ctx.key_store.name} ({ctx.key_store.id})")


def _resolve_fqdn(ctx: ProvisioningContext) -> None:
    ctx.fqdn = host.resolve_fqdn(ctx.config.fqdn, ctx.config.fqdn_fallback)
    logger.info(f"CRL 分发地址使用主机名：{ctx.fqdn}")


def _crl_settings(ctx: ProvisioningContext, name: str, lifetime_days: int, regen_days: int) -> CrlSettings:
    return CrlSettings(
        lifetime_days=lifetime_days,
        regeneration_days=regen_days,
        file_path=f"{ctx.config.crl_dir.rstrip('/')}/{name}.crl",
        distribution_point=f"http://{ctx.fqdn}/crl/{name}.crl",
    )


def _ca_request(
    ctx: ProvisioningContext,
    name: str,
    dn: str,
    validity_days: int,
    crl: CrlSettings,
    issuer_ca_id: str | None,
) -> CAConfigRequest:
    cfg = ctx.config
    key_store = ctx.require("key_store", CAConfigError)
    return CAConfigRequest(
        name=name,
        subject_dn=dn,
        signature_algorithm=cfg.signature_algorithm,
        key_size=cfg.key_size,
        hash_algorithm=cfg.hash_algorithm,
        is_root=issuer_ca_id is None,
        key_store_id=key_store.id,
        validity_days=validity_days,
        crl=crl,
        issuer_ca_id=issuer_ca_id,
        policies=[PolicyQualifier(oid=cfg.policy_oid, notice=cfg.policy_notice)],
    )


def _persist(ca: CAConfig, name: str, path) -> x509.Certificate:
    try:
        cert = persist_certificate(ca.certificate, path)
    except ValueError as e:
        raise CAConfigError(
            f"管理 API 返回的 CA 证书无法解析：{e}", entity=name, context={"ca_id": ca.id}
        ) from e
    log_certificate_info(name, cert)
    return cert


def _root_ca(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    crl = _crl_settings(ctx, cfg.root_ca_name, cfg.root_crl_lifetime_days, cfg.root_crl_regen_days)
    request = _ca_request(ctx, cfg.root_ca_name, cfg.root_ca_dn, cfg.root_ca_validity_days, crl, None)
    ctx.root_ca = ctx.require_api().create_local_ca_config(request)
    ctx.root_ca_cert = _persist(ctx.root_ca, cfg.root_ca_name, cfg.root_ca_cert_path)
    logger.info(f"根 CA 已创建：{cfg.root_ca_name} ({ctx.root_ca.id})")


def _intermediate_ca(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    root_ca = ctx.require("root_ca", CAConfigError)
    crl = _crl_settings(ctx, cfg.int_ca_name, cfg.int_crl_lifetime_days, cfg.int_crl_regen_days)
    request = _ca_request(ctx, cfg.int_ca_name, cfg.int_ca_dn, cfg.int_ca_validity_days, crl, root_ca.id)
    ctx.intermediate_ca = ctx.require_api().create_local_ca_config(request)
    ctx.intermediate_ca_cert = _persist(ctx.intermediate_ca, cfg.int_ca_name, cfg.intermediate_ca_cert_path)
    logger.info(f"中间 CA 已创建：{cfg.int_ca_name} ({ctx.intermediate_ca.id})，签发者 {root_ca.id}")


def _ocsp(ctx: ProvisioningContext) -> None:
    intermediate_ca = ctx.require("intermediate_ca", OCSPBindingError)
    ctx.require_api().set_ocsp_for_local_ca(intermediate_ca.id)
    logger.info(f"已为中间 CA 绑定 OCSP：{intermediate_ca.id}")


def _profile(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    ctx.profile_id = ctx.require_api().create_cert_profile(
        CertProfileRequest(
            name=cfg.profile_name,
            lifetime_minutes=cfg.profile_lifetime_minutes,
            copy_san_from_request=cfg.profile_copy_san,
        )
    )
    logger.info(f"证书模板已创建：{cfg.profile_name} ({ctx.profile_id})")


def _issuer(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    intermediate_ca = ctx.require("intermediate_ca", IssuerCreationError)
    profile_id = ctx.require("profile_id", IssuerCreationError)
    ctx.issuer_id = ctx.require_api().create_local_ca(
        CertIssuerRequest(name=cfg.issuer_name, ca_config_id=intermediate_ca.id, profile_id=profile_id)
    )
    logger.info(f"签发者已创建：{cfg.issuer_name} ({ctx.issuer_id})")


def _csr_generator(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    ctx.csr_generator_id = ctx.require_api().create_csr_generator(
        CsrGeneratorRequest(
            name=cfg.csr_generator_name,
            signature_algorithm=cfg.signature_algorithm,
            key_size=cfg.csr_key_size,
            hash_algorithm=cfg.hash_algorithm,
        )
    )
    logger.info(f"CSR 生成器已创建：{cfg.csr_generator_name} ({ctx.csr_generator_id})")


def merge_authorised_ids(*groups: List[str]) -> List[str]:
    """按出现顺序合并并去重授权签发者标识。"""
    merged: List[str] = []
    for group in groups:
        for item in group:
            if item and item not in merged:
                merged.append(item)
    return merged


def _team(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    issuer_id = ctx.require("issuer_id", TeamUpdateError)
    api = ctx.require_api()
    team = api.get_team(cfg.team_name)
    authorised = merge_authorised_ids(team.authorised_cas, cfg.extra_authorised_issuer_ids, [issuer_id])
    ctx.team = api.update_team(team, authorised)
    logger.info(f"团队 {team.name} 的授权签发者已更新：{authorised}")


def _logout(ctx: ProvisioningContext) -> None:
    if ctx.api is None or not ctx.logged_in:
        return
    ctx.logged_in = False
    ctx.api.logout()
    logger.info("管理会话已关闭")


def _trust_import(ctx: ProvisioningContext) -> None:
    cfg = ctx.config
    store = ctx.require_trust_store()
    store.import_certificate(cfg.root_ca_cert_path, StoreLocation.ROOT)
    store.import_certificate(cfg.intermediate_ca_cert_path, StoreLocation.INTERMEDIATE)


def _browser(ctx: ProvisioningContext) -> None:
    host.launch_browser(ctx.config.browser_url)


STEPS: List[Step] = [
    Step("preflight", "校验运行平台与权限", _preflight, TrustImportError),
    Step("download", "下载安装包", _download, DownloadError),
    Step("extract", "解压安装包", _extract, ExtractionError),
    Step("prerequisite", "安装依赖运行库", _prerequisite, PrerequisiteInstallError),
    Step("install", "运行产品安装程序", _install, InstallError),
    Step("bootstrap_trust", "信任引导证书", _bootstrap_trust, TrustImportError),
    Step("wait_service", "等待管理服务就绪", _wait_service, AuthenticationError,
         enabled=lambda c: c.service_ready_timeout_s > 0),
    Step("login", "登录管理服务", _login, AuthenticationError),
    Step("keystore", "创建密钥库", _keystore, KeyStoreCreationError),
    Step("resolve_fqdn", "解析本机 FQDN", _resolve_fqdn, HostResolutionError),
    Step("root_ca", "创建根 CA", _root_ca, CAConfigError),
    Step("intermediate_ca", "创建中间 CA", _intermediate_ca, CAConfigError),
    Step("ocsp", "为中间 CA 启用 OCSP", _ocsp, OCSPBindingError),
    Step("profile", "创建证书模板", _profile, ProfileCreationError),
    Step("issuer", "创建签发者", _issuer, IssuerCreationError),
    Step("csr_generator", "创建 CSR 生成器", _csr_generator, GeneratorCreationError),
    Step("team", "授权团队使用签发者", _team, TeamUpdateError),
    Step("logout", "关闭管理会话", _logout, AuthenticationError, best_effort=True),
    Step("trust_import", "导入 CA 证书到本地信任库", _trust_import, TrustImportError),
    Step("browser", "打开浏览器", _browser, ProvisioningError, best_effort=True,
         enabled=lambda c: c.launch_browser),
]
