"""
支付网关配置服务：管理 system_config 表中的易支付接入参数。

管理员在后台保存的配置优先，未配置时回退到环境变量
EPAY_GATEWAY_URL / EPAY_PID / EPAY_KEY。
商户密钥使用 Fernet 对称加密保存，密钥由 JWT_SECRET 通过 PBKDF2 派生。
"""

import base64
import logging
import os
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from learnmart.database import get_db

logger = logging.getLogger(__name__)

ALLOWED_PAYMENT_TYPES = ("alipay", "wxpay")


class GatewayConfigError(Exception):
    """网关配置操作异常。"""
    pass


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"learnmart-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _encrypt(plaintext: str) -> str:
    """加密明文字符串，返回密文。"""
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    """解密密文字符串，返回明文。"""
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        existing = db.execute(
            "SELECT id FROM system_config WHERE config_key = ?", (key,)
        ).fetchone()
        if existing:
            db.execute(
                "UPDATE system_config SET config_value = ?, updated_at = ? WHERE config_key = ?",
                (value, now, key),
            )
        else:
            db.execute(
                "INSERT INTO system_config (config_key, config_value, updated_at) VALUES (?, ?, ?)",
                (key, value, now),
            )
        db.commit()
    finally:
        db.close()


# ── 网关配置 ──────────────────────────────────────────────


def save_gateway_settings(gateway_url: str, pid: str, key: str) -> None:
    """
    保存易支付网关地址、商户 ID 和商户密钥（密钥加密存储）。

    Raises:
        GatewayConfigError: 参数缺失或网关地址格式错误。
    """
    gateway_url = (gateway_url or "").strip().rstrip("/")
    pid = (pid or "").strip()
    key = (key or "").strip()

    if not gateway_url or not pid or not key:
        raise GatewayConfigError("网关地址、商户ID和商户密钥不能为空")
    if not gateway_url.startswith(("http://", "https://")):
        raise GatewayConfigError("网关地址必须以 http:// 或 https:// 开头")

    set_config("epay_gateway_url", gateway_url)
    set_config("epay_pid", pid)
    set_config("epay_key", _encrypt(key))
    logger.info("支付网关配置已更新: gateway=%s, pid=%s", gateway_url, pid)


def get_gateway_settings() -> dict | None:
    """
    获取当前生效的网关配置。

    Returns:
        dict: {"gateway_url", "pid", "key", "source"}，未配置时返回 None。
    """
    gateway_url = get_config("epay_gateway_url")
    pid = get_config("epay_pid")
    encrypted_key = get_config("epay_key")

    if gateway_url and pid and encrypted_key:
        try:
            return {
                "gateway_url": gateway_url,
                "pid": pid,
                "key": _decrypt(encrypted_key),
                "source": "database",
            }
        except InvalidToken:
            logger.error("解密商户密钥失败，JWT_SECRET 可能已变更")
            return None

    env_url = os.getenv("EPAY_GATEWAY_URL", "").strip().rstrip("/")
    env_pid = os.getenv("EPAY_PID", "").strip()
    env_key = os.getenv("EPAY_KEY", "").strip()
    if env_url and env_pid and env_key:
        return {
            "gateway_url": env_url,
            "pid": env_pid,
            "key": env_key,
            "source": "env",
        }

    return None


def get_gateway_status() -> dict:
    """
    获取网关配置状态（不含密钥明文），供管理后台展示。

    Returns:
        dict: {"configured": bool, "gateway_url": str|None, "pid": str|None, "source": str|None}
    """
    settings = get_gateway_settings()
    if not settings:
        return {"configured": False, "gateway_url": None, "pid": None, "source": None}
    return {
        "configured": True,
        "gateway_url": settings["gateway_url"],
        "pid": settings["pid"],
        "source": settings["source"],
    }
