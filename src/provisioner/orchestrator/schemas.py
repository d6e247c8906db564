"""
文件功能：
    定义编排流程对外的结果数据模型（Pydantic）。

公开接口：
    - ProvisioningResult: 一次完整编排运行后创建的实体标识与证书文件路径
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class ProvisioningResult(BaseModel):
    """一次成功运行的摘要。"""

    key_store_id: str = Field(description="密钥库标识")
    root_ca_id: str = Field(description="根 CA 配置标识")
    intermediate_ca_id: str = Field(description="中间 CA 配置标识")
    profile_id: str = Field(description="证书模板标识")
    issuer_id: str = Field(description="签发者标识")
    csr_generator_id: str = Field(description="CSR 生成器标识")
    team_id: str = Field(description="已更新授权的团队标识")
    authorised_issuer_ids: List[str] = Field(default_factory=list, description="团队更新后的授权签发者列表")
    root_ca_certificate: str = Field(description="根 CA 证书文件路径")
    intermediate_ca_certificate: str = Field(description="中间 CA 证书文件路径")
    fqdn: str = Field(description="用于 CRL 分发地址的本机名称")
