"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类（显式传入编排器，不提供模块级单例）
- load_config: 构造一个新的 Config 实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_id_list: 将字符串/JSON 解析为 List[str]
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Tuple

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    # 管理员与口令
    admin_username: str = "admin"
    admin_email: str = "admin@example.com"
    admin_password: SecretStr = SecretStr("password")
    db_admin_password: SecretStr = SecretStr("password")
    keystore_name: str = "SoftwareKeyStore"
    keystore_password: SecretStr = SecretStr("password")

    # 安装包与安装过程
    artifact_url: str = "https://downloads.example.com/pki-manager/pki-manager-latest.zip"
    download_path: Path = Path("C:/Temp/pki-manager.zip")
    extract_dir: Path = Path("C:/Temp/pki-manager")
    prerequisite_installer: str = "vc_redist.x64.exe"
    prerequisite_installer_args: Annotated[List[str], NoDecode] = ["/install", "/quiet", "/norestart"]
    product_installer: str = "pkimanager.exe"
    install_dir: Path = Path("C:/Program Files/PKI Manager")
    bootstrap_certificate: str = "certs/bootstrap.crt"
    listen_address: str = "0.0.0.0"
    listen_port: int = 443
    enable_agent: bool = True

    # 管理 API
    api_host: str = "localhost"
    api_path: str = "/api/v1"
    browser_url: str = "https://localhost/"

    # 超时与重试（秒）
    download_timeout_s: float = Field(default=120.0, gt=0)
    api_timeout_s: float = Field(default=30.0, gt=0)
    installer_timeout_s: float = Field(default=1800.0, gt=0)
    # 0 表示跳过端口探测
    service_ready_timeout_s: float = Field(default=120.0, ge=0)
    # 0 表示不重试
    login_retry_attempts: int = Field(default=5, ge=0)
    login_retry_backoff_s: float = Field(default=2.0, ge=0)

    # 主机名解析
    fqdn: str | None = None
    fqdn_fallback: bool = True

    # 根 CA
    root_ca_name: str = "RootCA"
    root_ca_dn: str = "CN=Root CA,O=Example"
    root_ca_validity_days: int = 7300
    root_crl_lifetime_days: int = 365
    root_crl_regen_days: int = 180

    # 中间 CA
    int_ca_name: str = "IssuingCA"
    int_ca_dn: str = "CN=Issuing CA,O=Example"
    int_ca_validity_days: int = 3650
    int_crl_lifetime_days: int = 7
    int_crl_regen_days: int = 1

    # CA 公共参数
    signature_algorithm: str = "RSA"
    key_size: int = 4096
    hash_algorithm: str = "SHA256"
    crl_dir: str = "C:/inetpub/wwwroot/crl"
    policy_oid: str = "2.5.29.32.0"
    policy_notice: str = "This CA is for internal use only"

    # 证书模板、签发者与 CSR 生成器
    profile_name: str = "ServerClientProfile"
    profile_lifetime_minutes: int = 525600
    profile_copy_san: bool = True
    issuer_name: str = "IssuingCA-ServerClient"
    csr_generator_name: str = "DefaultCsrGenerator"
    csr_key_size: int = 2048

    # 团队授权
    team_name: str = "Administrators"
    extra_authorised_issuer_ids: Annotated[List[str], NoDecode] = []

    # 本地输出与权限
    certs_dir: Path = Path("certs")
    require_elevation: bool = True
    launch_browser: bool = True
    log_file: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("listen_port")
    @classmethod
    def port_must_be_valid(cls, value: int) -> int:
        if value < 1 or value > 65535:
            raise ValueError("端口必须在 1 到 65535 之间")
        return value

    @field_validator("extra_authorised_issuer_ids", "prerequisite_installer_args", mode="before")
    @classmethod
    def parse_id_list(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析列表。"""
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            # 优先尝试 JSON
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v) for v in loaded]
            except ValueError:
                pass
            # 回退为分隔符拆分（, ; 空白）
            return [p for p in re.split(r"[\s,;]+", text) if p]
        return value

    @property
    def service_host(self) -> str:
        return f"{self.api_host}:{self.listen_port}"

    @property
    def api_base_url(self) -> str:
        return f"https://{self.service_host}{self.api_path}"

    @property
    def bootstrap_certificate_path(self) -> Path:
        """安装器随附的引导证书，位于安装目录下。"""
        return self.install_dir / self.bootstrap_certificate

    @property
    def root_ca_cert_path(self) -> Path:
        return self.certs_dir / f"{self.root_ca_name}.crt"

    @property
    def intermediate_ca_cert_path(self) -> Path:
        return self.certs_dir / f"{self.int_ca_name}.crt"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                with path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                self._data = data if isinstance(data, dict) else {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, False
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_config(**overrides: Any) -> Config:
    """构造一个新的配置实例；overrides 优先级最高。"""
    return Config(**overrides)
