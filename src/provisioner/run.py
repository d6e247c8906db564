#!/usr/bin/env python
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from src.provisioner.config import load_config
from src.provisioner.errors import ProvisioningError
from src.provisioner.orchestrator.services import run


def setup_logging(log_level: str, log_file: str | None = None) -> None:
    logger.remove()
    logger.add(sys.stderr, level=log_level)
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5, encoding="utf-8")


def main() -> int:
    load_dotenv(Path.cwd() / ".env")
    config = load_config()
    setup_logging(os.getenv("LOG_LEVEL", "INFO").upper(), config.log_file)
    logger.info("PKI 产品安装与配置流程开始运行")
    logger.info(f"config: {config.model_dump_json(indent=4)}")
    try:
        result = run(config)
    except ProvisioningError as e:
        logger.error(f"配置流程在步骤 {e.step} 中止：{e}")
        logger.error("流程无法续跑：请卸载产品并在干净主机上重新运行")
        return 1
    logger.info(f"签发者已就绪：{result.issuer_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
