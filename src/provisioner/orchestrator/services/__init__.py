"""
编排服务模块集合。

此包包含固定顺序的步骤定义、执行器以及本机辅助服务。
"""

from .pipeline import execute_steps, run
from .steps import STEPS, ProvisioningContext, Step

__all__ = [
    "run",
    "execute_steps",
    "STEPS",
    "Step",
    "ProvisioningContext",
]
