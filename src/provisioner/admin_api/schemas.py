"""
文件功能：
    定义管理 API 请求与响应的数据模型（Pydantic）。

公开接口：
    - KeyStore: 软件密钥库
    - CrlSettings / PolicyQualifier: CA 配置中的 CRL 与策略参数
    - CAConfigRequest / CAConfig: 本地 CA 配置的请求与结果
    - CertProfileRequest: 证书模板
    - CertIssuerRequest: 证书签发者（CA 配置 + 证书模板）
    - CsrGeneratorRequest: CSR 生成器
    - Team: 团队及其授权签发者列表

线上字段名统一为 camelCase，通过别名映射。
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class KeyStore(ApiModel):
    id: str = Field(description="密钥库标识")
    name: str = Field(description="密钥库名称")


class CrlSettings(ApiModel):
    """CRL 生成参数。"""

    lifetime_days: int = Field(description="CRL 有效期（天）")
    regeneration_days: int = Field(description="CRL 重新生成间隔（天）")
    file_path: str = Field(description="CRL 输出文件路径")
    distribution_point: str = Field(description="CRL 分发点 URL")


class PolicyQualifier(ApiModel):
    oid: str
    notice: str | None = None


class CAConfigRequest(ApiModel):
    name: str
    subject_dn: str
    signature_algorithm: str
    key_size: int
    hash_algorithm: str
    is_root: bool
    key_store_id: str
    validity_days: int
    crl: CrlSettings
    issuer_ca_id: str | None = Field(default=None, description="签发者 CA 标识，根 CA 为空")
    policies: List[PolicyQualifier] = Field(default_factory=list)


class CAConfig(ApiModel):
    id: str = Field(description="CA 配置标识")
    certificate: str = Field(description="CA 证书（PEM、Base64 PEM 或 Base64 DER）")


class CertProfileRequest(ApiModel):
    name: str
    lifetime_minutes: int
    copy_san_from_request: bool = True
    extended_key_usages: List[str] = Field(default_factory=lambda: ["clientAuth", "serverAuth"])
    key_usages: List[str] = Field(default_factory=lambda: ["digitalSignature", "keyEncipherment"])


class CertIssuerRequest(ApiModel):
    name: str
    ca_config_id: str
    profile_id: str


class CsrGeneratorRequest(ApiModel):
    name: str
    signature_algorithm: str
    key_size: int
    hash_algorithm: str


class Team(ApiModel):
    id: str
    name: str
    authorised_cas: List[str] = Field(default_factory=list, description="已授权签发者标识列表")
    version: int | None = Field(default=None, description="乐观并发版本号")
