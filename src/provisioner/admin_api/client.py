"""
管理 API 客户端。

AdminApi 描述编排流程需要的能力集合（登录、登出、各类创建与团队更新），
HttpAdminApi 基于 httpx 实现产品的 REST 接口。编排逻辑只依赖 AdminApi，
测试时可替换为内存实现。
"""

from __future__ import annotations

import ssl
import time
from pathlib import Path
from typing import List, Protocol, Type

import httpx
from loguru import logger

from ..errors import (
    AuthenticationError,
    AuthorizationUpdateError,
    CAConfigError,
    GeneratorCreationError,
    IssuerCreationError,
    IssuerNotFoundError,
    KeyStoreCreationError,
    OCSPBindingError,
    ProfileCreationError,
    ProvisioningError,
    TeamUpdateError,
)
from .schemas import (
    CAConfig,
    CAConfigRequest,
    CertIssuerRequest,
    CertProfileRequest,
    CsrGeneratorRequest,
    KeyStore,
    Team,
)

# 连接被拒绝或超时：服务可能仍在启动
TRANSIENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout)


class AdminApi(Protocol):
    def login(self, username: str, password: str) -> str: ...

    def logout(self) -> None: ...

    def create_key_store(self, name: str, password: str) -> KeyStore: ...

    def create_local_ca_config(self, request: CAConfigRequest) -> CAConfig: ...

    def set_ocsp_for_local_ca(self, ca_id: str) -> None: ...

    def create_cert_profile(self, request: CertProfileRequest) -> str: ...

    def create_local_ca(self, request: CertIssuerRequest) -> str: ...

    def create_csr_generator(self, request: CsrGeneratorRequest) -> str: ...

    def get_team(self, name: str) -> Team: ...

    def update_team(self, team: Team, authorised_cas: List[str]) -> Team: ...


def _tls_failure(exc: BaseException) -> ssl.SSLError | None:
    """在异常链中查找 TLS 握手/证书校验错误；httpx 将其包装为 ConnectError。"""
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLError):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


class HttpAdminApi:
    """通过 REST 调用管理 API；所有请求都带有有界超时。"""

    def __init__(
        self,
        base_url: str,
        *,
        verify: str | Path | ssl.SSLContext | bool = True,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(
            base_url=base_url,
            verify=ssl.create_default_context(cafile=str(verify)) if isinstance(verify, (str, Path)) else verify,
            timeout=timeout,
        )
        self._token: str | None = None

    @property
    def token(self) -> str | None:
        return self._token

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        url: str,
        error: Type[ProvisioningError],
        entity: str,
        **kwargs,
    ) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            response = self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise error(f"调用管理 API 失败: {method} {url}: {e}", entity=entity) from e
        return response

    def _raise_for_status(
        self,
        response: httpx.Response,
        error: Type[ProvisioningError],
        entity: str,
        action: str,
    ) -> None:
        if response.is_success:
            return
        context = {"status": response.status_code}
        if response.status_code == 409:
            raise error(f"{action}失败：名称冲突，实体已存在: {_detail(response)}", entity=entity, context=context)
        raise error(f"{action}失败: {_detail(response)}", entity=entity, context=context)

    def _id_from(self, response: httpx.Response, error: Type[ProvisioningError], entity: str) -> str:
        try:
            value = response.json()["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise error("管理 API 响应中缺少 id 字段", entity=entity) from e
        return str(value)

    def login(self, username: str, password: str) -> str:
        try:
            response = self._client.post("/login", json={"username": username, "password": password})
        except httpx.ConnectError as e:
            tls_error = _tls_failure(e)
            if tls_error is None:
                raise
            # 证书不受信任或主机名不匹配：不重试
            raise AuthenticationError(
                f"管理服务 TLS 证书校验失败，请检查引导证书与访问主机名: {tls_error}",
                entity=username,
                context={"tls_error": type(tls_error).__name__},
            ) from e
        except TRANSIENT_ERRORS:
            raise
        except httpx.HTTPError as e:
            raise AuthenticationError(f"登录请求失败: {e}", entity=username) from e
        if response.status_code in (401, 403):
            raise AuthenticationError("管理员凭据无效", entity=username, context={"status": response.status_code})
        self._raise_for_status(response, AuthenticationError, username, "登录")
        try:
            self._token = str(response.json()["token"])
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError("登录响应中缺少会话令牌", entity=username) from e
        return self._token

    def logout(self) -> None:
        if not self._token:
            return
        response = self._request("POST", "/logout", AuthenticationError, "session")
        self._token = None
        self._raise_for_status(response, AuthenticationError, "session", "登出")

    def create_key_store(self, name: str, password: str) -> KeyStore:
        response = self._request(
            "POST",
            "/keystores",
            KeyStoreCreationError,
            name,
            json={"name": name, "password": password, "type": "software"},
        )
        self._raise_for_status(response, KeyStoreCreationError, name, "创建密钥库")
        return KeyStore(id=self._id_from(response, KeyStoreCreationError, name), name=name)

    def create_local_ca_config(self, request: CAConfigRequest) -> CAConfig:
        response = self._request("POST", "/ca-configs", CAConfigError, request.name, json=request.to_wire())
        if response.status_code == 404 and request.issuer_ca_id:
            raise IssuerNotFoundError(
                f"签发者 CA 不存在: {_detail(response)}",
                entity=request.name,
                context={"issuer_ca_id": request.issuer_ca_id},
            )
        self._raise_for_status(response, CAConfigError, request.name, "创建 CA 配置")
        try:
            return CAConfig.model_validate(response.json())
        except ValueError as e:
            raise CAConfigError(f"CA 配置响应无法解析: {e}", entity=request.name) from e

    def set_ocsp_for_local_ca(self, ca_id: str) -> None:
        response = self._request("POST", f"/ca-configs/{ca_id}/ocsp", OCSPBindingError, ca_id)
        if response.status_code == 409:
            raise OCSPBindingError(
                f"该 CA 已绑定 OCSP 响应器: {_detail(response)}", entity=ca_id, context={"status": 409}
            )
        self._raise_for_status(response, OCSPBindingError, ca_id, "绑定 OCSP")

    def create_cert_profile(self, request: CertProfileRequest) -> str:
        response = self._request("POST", "/cert-profiles", ProfileCreationError, request.name, json=request.to_wire())
        self._raise_for_status(response, ProfileCreationError, request.name, "创建证书模板")
        return self._id_from(response, ProfileCreationError, request.name)

    def create_local_ca(self, request: CertIssuerRequest) -> str:
        response = self._request("POST", "/local-cas", IssuerCreationError, request.name, json=request.to_wire())
        self._raise_for_status(response, IssuerCreationError, request.name, "创建签发者")
        return self._id_from(response, IssuerCreationError, request.name)

    def create_csr_generator(self, request: CsrGeneratorRequest) -> str:
        response = self._request("POST", "/csr-generators", GeneratorCreationError, request.name, json=request.to_wire())
        self._raise_for_status(response, GeneratorCreationError, request.name, "创建 CSR 生成器")
        return self._id_from(response, GeneratorCreationError, request.name)

    def get_team(self, name: str) -> Team:
        response = self._request("GET", "/teams", TeamUpdateError, name, params={"name": name})
        self._raise_for_status(response, TeamUpdateError, name, "查询团队")
        try:
            body = response.json()
        except ValueError as e:
            raise TeamUpdateError("团队查询响应无法解析", entity=name) from e
        items = body.get("items", []) if isinstance(body, dict) else body
        for item in items or []:
            team = Team.model_validate(item)
            if team.name == name:
                return team
        raise TeamUpdateError("团队不存在", entity=name)

    def update_team(self, team: Team, authorised_cas: List[str]) -> Team:
        payload: dict = {"authorisedCas": authorised_cas}
        if team.version is not None:
            payload["version"] = team.version
        response = self._request("PATCH", f"/teams/{team.id}", TeamUpdateError, team.name, json=payload)
        if response.status_code in (409, 412):
            raise AuthorizationUpdateError(
                "团队已被并发修改，授权签发者列表更新冲突",
                entity=team.name,
                context={"team_id": team.id, "status": response.status_code},
            )
        self._raise_for_status(response, TeamUpdateError, team.name, "更新团队")
        try:
            return Team.model_validate(response.json())
        except ValueError:
            return team.model_copy(update={"authorised_cas": authorised_cas})


def login_with_retry(
    api: AdminApi,
    username: str,
    password: str,
    *,
    attempts: int = 0,
    backoff_s: float = 2.0,
) -> str:
    """登录管理 API；仅在连接被拒绝/超时时按指数退避重试，最多 attempts 次。"""
    delay = backoff_s
    for attempt in range(attempts + 1):
        try:
            return api.login(username, password)
        except TRANSIENT_ERRORS as e:
            if attempt >= attempts:
                raise AuthenticationError(
                    f"管理服务不可达: {e}", entity=username, context={"attempts": attempt + 1}
                ) from e
            logger.warning(f"管理服务暂不可达，{delay:.1f}s 后重试登录 ({attempt + 1}/{attempts})：{e}")
            time.sleep(delay)
            delay *= 2
    raise AuthenticationError("登录失败", entity=username)
