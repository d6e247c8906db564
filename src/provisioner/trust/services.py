"""
本地操作系统信任库服务。

TrustStore 描述唯一需要的能力 import_certificate(path, location)：
- Windows 通过 certutil 写入 LocalMachine 的 Root / CA 容器
- Linux 根证书拷贝到系统锚点目录后执行 update-ca-certificates，中间证书不作为锚点
导入操作需要管理员/root 权限，ensure_elevated 用于在流程开始前校验。
"""

from __future__ import annotations

import ctypes
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Protocol

from loguru import logger

from ..errors import TrustImportError
from .core import load_certificate_file
from .schemas import Platform, StoreLocation


class TrustStore(Protocol):
    def import_certificate(self, path: Path, location: StoreLocation) -> None: ...


def _check_certificate(path: Path) -> None:
    try:
        load_certificate_file(path)
    except (OSError, ValueError) as e:
        raise TrustImportError(f"证书文件无效或不可读：{e}", entity=str(path)) from e


def _run(cmd: List[str], entity: str) -> None:
    logger.debug(f"Executing command: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise TrustImportError(f"执行信任库命令失败：{e}", entity=entity) from e
    if result.returncode != 0:
        raise TrustImportError(
            f"导入信任库失败：{result.stderr.strip() or result.stdout.strip()}",
            entity=entity,
            context={"returncode": result.returncode},
        )


class CertutilTrustStore:
    """Windows 本机信任库（LocalMachine\\Root 与 LocalMachine\\CA）。"""

    STORE_NAMES = {
        StoreLocation.ROOT: "Root",
        StoreLocation.INTERMEDIATE: "CA",
    }

    def import_certificate(self, path: Path, location: StoreLocation) -> None:
        _check_certificate(path)
        _run(["certutil", "-addstore", "-f", self.STORE_NAMES[location], str(path)], str(path))
        logger.info(f"已导入证书到 {self.STORE_NAMES[location]} 信任库：{path}")


class LinuxTrustStore:
    """基于 ca-certificates 的 Linux 系统信任库。

    update-ca-certificates 会把锚点目录下的每个证书都当作受信根，Linux 也没有
    独立的中间 CA 容器。因此只有根证书写入锚点目录；中间证书另存到
    intermediates_dir，供需要完整证书链的服务引用，不参与系统信任。
    """

    def __init__(
        self,
        anchors_dir: Path = Path("/usr/local/share/ca-certificates"),
        intermediates_dir: Path = Path("/usr/local/share/pki-provisioner/intermediate"),
    ) -> None:
        self.anchors_dir = Path(anchors_dir)
        self.intermediates_dir = Path(intermediates_dir)

    def _target(self, path: Path, location: StoreLocation) -> Path:
        name = Path(path).stem + ".crt"
        if location == StoreLocation.ROOT:
            return self.anchors_dir / "provisioner-root" / name
        return self.intermediates_dir / name

    def import_certificate(self, path: Path, location: StoreLocation) -> None:
        _check_certificate(path)
        target = self._target(path, location)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
        except OSError as e:
            raise TrustImportError(f"无法写入证书目录：{e}", entity=str(path)) from e
        if location == StoreLocation.INTERMEDIATE:
            logger.info(f"中间 CA 证书已保存（不作为信任锚点）：{target}")
            return
        _run(["update-ca-certificates"], str(path))
        logger.info(f"已导入证书到系统信任库：{target}")


def current_platform() -> Platform:
    if sys.platform.startswith("win"):
        return Platform.WINDOWS
    if sys.platform == "darwin":
        return Platform.MACOS
    return Platform.LINUX


def get_trust_store(platform: Platform | None = None) -> TrustStore:
    """
    获取当前平台的信任库实现。
    :raises ValueError: 不支持的平台
    """
    platform = platform or current_platform()
    if platform == Platform.WINDOWS:
        return CertutilTrustStore()
    elif platform == Platform.LINUX:
        return LinuxTrustStore()
    else:
        raise ValueError(f"不支持的平台: {platform}")


def is_elevated() -> bool:
    if current_platform() == Platform.WINDOWS:
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def ensure_elevated() -> None:
    """导入信任库需要提升权限，在流程开始前校验。"""
    if not is_elevated():
        raise TrustImportError("需要以管理员/root 权限运行才能导入信任库证书", entity="current-user")
