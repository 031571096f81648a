"""易支付 MD5 签名生成与验证模块。"""

import hashlib
import hmac


def generate_sign(params: dict, key: str) -> str:
    """
    生成 MD5 签名。

    1. 过滤空值和 sign、sign_type 参数
    2. 按参数名 ASCII 码从小到大排序
    3. 拼接 URL 键值对（参数值不 URL 编码）
    4. 拼接商户密钥 KEY 后 MD5 加密

    返回小写 32 位十六进制签名字符串。
    """
    filtered = {
        k: v
        for k, v in params.items()
        if k not in ("sign", "sign_type") and v is not None and str(v) != ""
    }

    query_string = "&".join(f"{k}={filtered[k]}" for k in sorted(filtered))

    return hashlib.md5((query_string + key).encode("utf-8")).hexdigest()


def sign_params(params: dict, key: str) -> dict:
    """返回附带 sign 和 sign_type=MD5 的新参数字典，原字典不变。"""
    signed = {k: str(v) for k, v in params.items() if v is not None}
    signed["sign"] = generate_sign(signed, key)
    signed["sign_type"] = "MD5"
    return signed


def verify_sign(params: dict, key: str, sign: str | None) -> bool:
    """验证请求签名是否正确。"""
    if not sign:
        return False
    expected = generate_sign(params, key)
    return hmac.compare_digest(expected, sign.lower())
