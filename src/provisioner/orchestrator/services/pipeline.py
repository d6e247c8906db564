"""
编排流程执行器。

严格线性：按 STEPS 顺序逐个执行，首个失败即中止并向上抛出带有步骤上下文的异常；
仅关闭会话与打开浏览器为尽力而为。无断点续跑，失败后需卸载并在干净主机上重跑。
"""

from __future__ import annotations

from typing import Callable, List

import httpx
from loguru import logger

from ...admin_api.client import AdminApi, HttpAdminApi
from ...config import Config
from ...errors import ProvisioningError
from ...trust.services import TrustStore
from ..schemas import ProvisioningResult
from .steps import STEPS, ProvisioningContext, Step, default_api_factory


def execute_steps(steps: List[Step], ctx: ProvisioningContext) -> None:
    total = len(steps)
    for index, step in enumerate(steps, start=1):
        if not step.enabled(ctx.config):
            logger.info(f"[{index}/{total}] 跳过：{step.description}")
            continue
        logger.info(f"[{index}/{total}] {step.description}")
        try:
            step.action(ctx)
        except ProvisioningError as e:
            if e.step is None:
                e.step = step.name
            if step.best_effort:
                logger.warning(f"步骤 {step.name} 失败（非致命）：{e}")
                continue
            logger.error(f"步骤 {step.name} 失败：{e}")
            raise
        except Exception as e:
            if step.best_effort:
                logger.warning(f"步骤 {step.name} 失败（非致命）：{e}")
                continue
            err = step.error(f"{step.description}时发生未预期错误：{e}", step=step.name)
            logger.error(f"步骤 {step.name} 失败：{err}")
            raise err from e


def _close_session_quietly(ctx: ProvisioningContext) -> None:
    if ctx.api is None or not ctx.logged_in:
        return
    ctx.logged_in = False
    try:
        ctx.api.logout()
    except Exception as e:
        logger.warning(f"中止后关闭管理会话失败：{e}")


def _result(ctx: ProvisioningContext) -> ProvisioningResult:
    cfg = ctx.config
    team = ctx.require("team", ProvisioningError)
    return ProvisioningResult(
        key_store_id=ctx.require("key_store", ProvisioningError).id,
        root_ca_id=ctx.require("root_ca", ProvisioningError).id,
        intermediate_ca_id=ctx.require("intermediate_ca", ProvisioningError).id,
        profile_id=ctx.profile_id or "",
        issuer_id=ctx.issuer_id or "",
        csr_generator_id=ctx.csr_generator_id or "",
        team_id=team.id,
        authorised_issuer_ids=list(team.authorised_cas),
        root_ca_certificate=str(cfg.root_ca_cert_path),
        intermediate_ca_certificate=str(cfg.intermediate_ca_cert_path),
        fqdn=ctx.fqdn or "",
    )


def run(
    config: Config,
    *,
    api: AdminApi | None = None,
    trust_store: TrustStore | None = None,
    http_client: httpx.Client | None = None,
    api_factory: Callable[[Config], AdminApi] = default_api_factory,
    steps: List[Step] | None = None,
) -> ProvisioningResult:
    """
    执行完整的安装与配置流程。
    :param config: 显式传入的配置对象
    :param api: 管理 API 实现；为空时在登录步骤通过 api_factory 创建
    :param trust_store: 本地信任库实现；为空时在 preflight 步骤按当前平台选择
    :param http_client: 下载安装包使用的 httpx 客户端
    :return: 创建的实体标识与证书文件路径
    :raises ProvisioningError: 任一非尽力而为步骤失败
    """
    ctx = ProvisioningContext(
        config=config,
        trust_store=trust_store,
        api=api,
        api_factory=api_factory,
        http_client=http_client,
    )
    try:
        execute_steps(steps if steps is not None else STEPS, ctx)
    finally:
        _close_session_quietly(ctx)
        if api is None and isinstance(ctx.api, HttpAdminApi):
            ctx.api.close()
    result = _result(ctx)
    logger.info(f"配置完成: {result.model_dump_json(indent=4)}")
    return result
