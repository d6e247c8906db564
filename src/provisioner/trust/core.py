"""
证书解析与落盘。

管理 API 返回的 CA 证书可能是 PEM 文本、Base64 编码的 PEM 或 Base64 编码的 DER，
这里统一解析为 x509.Certificate 并以 PEM 写入本地文件，供后续导入信任库。
"""

import base64
import re
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
from loguru import logger

_PEM_BLOCK = re.compile(r"-----BEGIN CERTIFICATE-----[\s\S]*?-----END CERTIFICATE-----")


def load_certificate_from_input(certificate_input: str) -> x509.Certificate:
    """
    尝试从输入中解析证书，兼容以下多种输入形式：
    1) 直接的 PEM 文本（包含 -----BEGIN CERTIFICATE-----）
    2) 含有证书 PEM 的一段文本（从中提取首个证书块）
    3) Base64 编码的 PEM 文本
    4) DER 二进制（以 Base64 字符串形式传入）

    :param certificate_input: 证书输入字符串
    :return: 解析得到的 x509.Certificate 对象
    :raises ValueError: 当无法识别/解析证书时
    """
    text = certificate_input.strip()

    # 情况 1/2：文本中已经包含 PEM 头
    if "-----BEGIN CERTIFICATE-----" in text:
        blocks = _PEM_BLOCK.findall(text)
        if blocks:
            return x509.load_pem_x509_certificate(blocks[0].encode("utf-8"))
        raise ValueError("PEM 证书块不完整")

    # 情况 3/4：作为 Base64 字符串解码后再解析（先 PEM，失败再 DER）
    try:
        decoded = base64.b64decode(text, validate=False)
    except ValueError as e:
        raise ValueError("无法从输入中解析证书") from e
    if b"-----BEGIN CERTIFICATE-----" in decoded:
        return x509.load_pem_x509_certificate(decoded)
    return x509.load_der_x509_certificate(decoded)


def load_certificate_file(path: Path) -> x509.Certificate:
    """读取本地证书文件（PEM 或 DER）。"""
    data = Path(path).read_bytes()
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def persist_certificate(certificate_input: str, path: Path) -> x509.Certificate:
    """解析证书并以 PEM 格式写入 path，返回解析后的证书。"""
    cert = load_certificate_from_input(certificate_input)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(Encoding.PEM))
    return cert


def describe_certificate(cert: x509.Certificate) -> str:
    serial = format(cert.serial_number, "x")
    fp = cert.fingerprint(hashes.SHA256()).hex()
    return (
        f"subject={cert.subject.rfc4514_string()}, issuer={cert.issuer.rfc4514_string()}, "
        f"serial=0x{serial}, not_after={cert.not_valid_after_utc}, sha256={fp}"
    )


def log_certificate_info(label: str, cert: x509.Certificate) -> None:
    logger.info(f"{label} 证书信息: {describe_certificate(cert)}")
