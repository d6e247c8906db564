"""
安装包获取与安装服务。

负责下载产品安装包、解压、静默安装依赖运行库，以及调用产品自身的安装程序。
只检查安装程序的退出码，不解析其输出。
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import List

import httpx
from loguru import logger

from ..config import Config
from ..errors import DownloadError, ExtractionError, InstallError, PrerequisiteInstallError


def download_artifact(
    url: str,
    target: Path,
    *,
    timeout: float = 120.0,
    client: httpx.Client | None = None,
) -> Path:
    """下载安装包到 target；已存在的目标文件会先被清除。"""
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        logger.info(f"清除已存在的安装包：{target}")
        target.unlink()
    tmp_path = target.with_suffix(target.suffix + ".downloading")
    logger.info(f"开始下载安装包：{url}")
    owns_client = client is None
    http = client or httpx.Client()
    try:
        with http.stream("GET", url, follow_redirects=True, timeout=timeout) as r:
            r.raise_for_status()
            with open(tmp_path, "wb") as f:
                for chunk in r.iter_bytes():
                    if chunk:
                        f.write(chunk)
        tmp_path.replace(target)
    except httpx.HTTPStatusError as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(
            f"下载安装包失败，HTTP {e.response.status_code}",
            entity=url,
            context={"status": e.response.status_code},
        ) from e
    except (httpx.HTTPError, OSError) as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(f"下载安装包失败：{e}", entity=url) from e
    finally:
        if owns_client:
            http.close()
    logger.info(f"安装包下载完成：{target}")
    return target


def extract_artifact(archive: Path, destination: Path) -> Path:
    """将安装包解压到 destination。"""
    try:
        destination.mkdir(parents=True, exist_ok=True)
        shutil.unpack_archive(str(archive), str(destination))
    except (shutil.ReadError, ValueError) as e:
        raise ExtractionError(f"安装包已损坏或格式不受支持：{e}", entity=str(archive)) from e
    except OSError as e:
        raise ExtractionError(f"无法写入解压目录：{e}", entity=str(destination)) from e
    logger.info(f"安装包已解压到：{destination}")
    return destination


def _run_installer(
    cmd: List[str],
    error: type[InstallError] | type[PrerequisiteInstallError],
    entity: str,
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
    secrets: List[str] | None = None,
) -> None:
    shown = " ".join("***" if secrets and part in secrets else part for part in cmd)
    logger.info(f"执行安装程序：{shown}")
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise error(f"找不到安装程序：{cmd[0]}", entity=entity) from e
    except subprocess.TimeoutExpired as e:
        raise error(f"安装程序在 {timeout}s 内未结束", entity=entity) from e
    if result.returncode != 0:
        raise error(
            f"安装程序以非零退出码结束：{result.returncode}",
            entity=entity,
            context={"returncode": result.returncode},
        )
    logger.info(f"安装程序执行成功：{entity}")


def run_prerequisite_installer(config: Config) -> None:
    """静默安装随包附带的运行库。"""
    installer = config.extract_dir / config.prerequisite_installer
    _run_installer(
        [str(installer), *config.prerequisite_installer_args],
        PrerequisiteInstallError,
        config.prerequisite_installer,
        cwd=config.extract_dir,
        timeout=config.installer_timeout_s,
    )


def build_install_command(config: Config) -> List[str]:
    """构建产品安装命令：管理员凭据、数据库口令、安装目录、监听地址与端口、代理开关。"""
    installer = config.extract_dir / config.product_installer
    cmd = [
        str(installer),
        "install",
        "--admin-username", config.admin_username,
        "--admin-email", config.admin_email,
        "--admin-password", config.admin_password.get_secret_value(),
        "--db-admin-password", config.db_admin_password.get_secret_value(),
        "--install-dir", str(config.install_dir),
        "--listen-address", config.listen_address,
        "--listen-port", str(config.listen_port),
    ]
    if config.enable_agent:
        cmd.append("--enable-agent")
    return cmd


def run_product_installer(config: Config) -> None:
    """运行产品安装程序。前置条件：全新主机，重复安装的行为未定义。"""
    _run_installer(
        build_install_command(config),
        InstallError,
        config.product_installer,
        cwd=config.extract_dir,
        timeout=config.installer_timeout_s,
        secrets=[
            config.admin_password.get_secret_value(),
            config.db_admin_password.get_secret_value(),
        ],
    )
