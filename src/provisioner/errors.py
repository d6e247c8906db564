"""
编排流程的异常体系。

每个步骤的失败都以 ProvisioningError 的子类抛出，携带出错步骤、相关实体以及
上下文信息，便于运维人员定位是哪个命名实体创建失败、期望的标识是什么。
"""

from __future__ import annotations

from typing import Any, Dict


class ProvisioningError(RuntimeError):
    """编排流程中所有可预期失败的基类。"""

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        entity: str | None = None,
        context: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.entity = entity
        self.context = context or {}

    def __str__(self) -> str:
        parts = []
        if self.step:
            parts.append(f"[{self.step}]")
        parts.append(self.message)
        if self.entity:
            parts.append(f"(实体: {self.entity})")
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"{{{details}}}")
        return " ".join(parts)


class DownloadError(ProvisioningError):
    pass


class ExtractionError(ProvisioningError):
    pass


class PrerequisiteInstallError(ProvisioningError):
    pass


class InstallError(ProvisioningError):
    pass


class AuthenticationError(ProvisioningError):
    pass


class KeyStoreCreationError(ProvisioningError):
    pass


class HostResolutionError(ProvisioningError):
    pass


class CAConfigError(ProvisioningError):
    pass


class IssuerNotFoundError(CAConfigError):
    pass


class OCSPBindingError(ProvisioningError):
    pass


class ProfileCreationError(ProvisioningError):
    pass


class IssuerCreationError(ProvisioningError):
    pass


class GeneratorCreationError(ProvisioningError):
    pass


class TeamUpdateError(ProvisioningError):
    pass


class AuthorizationUpdateError(TeamUpdateError):
    pass


class TrustImportError(ProvisioningError):
    pass
