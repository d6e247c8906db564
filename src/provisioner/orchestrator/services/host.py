"""
本机相关的辅助服务：FQDN 解析、管理服务就绪探测、打开浏览器。
"""

from __future__ import annotations

import socket
import time
import webbrowser

from loguru import logger

from ...errors import HostResolutionError

_LOCAL_NAMES = {"localhost", "localhost.localdomain", "ip6-localhost"}


def _is_qualified(name: str) -> bool:
    return bool(name) and "." in name and name.lower() not in _LOCAL_NAMES


def resolve_fqdn(configured: str | None = None, fallback: bool = True) -> str:
    """
    解析本机 FQDN，用于拼接 CRL/OCSP 分发地址。
    - 配置中显式给出 fqdn 时直接使用
    - 无法解析为完整域名时，fallback=True 则降级为主机名并告警，否则抛出 HostResolutionError
    """
    if configured:
        return configured
    try:
        fqdn = socket.getfqdn()
    except OSError as e:
        logger.debug(f"socket.getfqdn 失败：{e}")
        fqdn = ""
    if _is_qualified(fqdn):
        return fqdn
    if not fallback:
        raise HostResolutionError("无法解析本机 FQDN", entity=fqdn or "localhost")
    hostname = socket.gethostname()
    if not hostname:
        raise HostResolutionError("无法解析本机 FQDN，且主机名为空", entity="localhost")
    logger.warning(f"无法解析本机 FQDN，降级使用主机名：{hostname}")
    return hostname


def probe_service_ready(host: str, port: int, timeout_s: float = 120) -> bool:
    """通过 TCP 连接探测管理服务端口是否就绪。"""
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.settimeout(0.5)
            try:
                if s.connect_ex((host, port)) == 0:
                    return True
            except OSError:
                pass
        time.sleep(0.3)
    return False


def launch_browser(url: str) -> None:
    """打开默认浏览器；失败由调用方作为非致命错误处理。"""
    if not webbrowser.open(url):
        raise RuntimeError(f"未能打开浏览器：{url}")
    logger.info(f"已在浏览器中打开：{url}")
