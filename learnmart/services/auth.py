"""
认证模块：JWT 令牌生成/验证、密码 bcrypt 哈希、管理员与用户登录、FastAPI 依赖项。

令牌来源优先级：Authorization header (Bearer) > cookie "token"。
"""

import os
import sqlite3
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Request, HTTPException
from jose import jwt, JWTError

from learnmart.database import get_db

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24

MAX_LOGIN_FAILURES = 5
LOCKOUT_MINUTES = 15

ROLE_ADMIN = "admin"
ROLE_USER = "user"


def hash_password(password: str) -> str:
    """使用 bcrypt 对密码进行哈希。"""
    return bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """验证密码是否与 bcrypt 哈希匹配。"""
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(subject: str, role: str = ROLE_ADMIN) -> str:
    """生成 JWT 令牌，有效期 24 小时。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {"sub": str(subject), "role": role, "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证 JWT 令牌。

    Returns:
        解码后的 payload 字典。

    Raises:
        ValueError: 令牌无效或已过期。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        if "sub" not in payload:
            raise ValueError("令牌缺少用户信息")
        return payload
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")


def _lock_time() -> str:
    return (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).strftime(
        "%Y-%m-%d %H:%M:%S"
    )


def _is_locked(locked_until: str | None) -> bool:
    if not locked_until:
        return False
    return datetime.now() < datetime.strptime(locked_until, "%Y-%m-%d %H:%M:%S")


def authenticate(username: str, password: str) -> dict:
    """
    验证管理员用户名和密码。

    - 检查账号是否被锁定（连续 5 次失败锁定 15 分钟）
    - 验证密码
    - 成功：重置失败计数，返回 JWT 令牌
    - 失败：递增失败计数，达到 5 次则设置锁定时间

    Returns:
        {"code": 1, "token": "..."}

    Raises:
        ValueError: 认证失败时抛出，msg 包含错误原因。
    """
    db = get_db()
    try:
        admin = db.execute(
            "SELECT * FROM admin WHERE username = ?", (username,)
        ).fetchone()

        if not admin:
            raise ValueError("用户名或密码错误")

        if admin["locked_until"]:
            if _is_locked(admin["locked_until"]):
                raise ValueError("账号已锁定，请稍后再试")
            # 锁定已过期，重置
            db.execute(
                "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
                (admin["id"],),
            )
            db.commit()
            admin = db.execute(
                "SELECT * FROM admin WHERE id = ?", (admin["id"],)
            ).fetchone()

        if not verify_password(password, admin["password_hash"]):
            fail_count = admin["login_fail_count"] + 1
            if fail_count >= MAX_LOGIN_FAILURES:
                db.execute(
                    "UPDATE admin SET login_fail_count = ?, locked_until = ? WHERE id = ?",
                    (fail_count, _lock_time(), admin["id"]),
                )
            else:
                db.execute(
                    "UPDATE admin SET login_fail_count = ? WHERE id = ?",
                    (fail_count, admin["id"]),
                )
            db.commit()
            raise ValueError("用户名或密码错误")

        db.execute(
            "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
            (admin["id"],),
        )
        db.commit()

        return {"code": 1, "token": create_token(username, ROLE_ADMIN)}
    finally:
        db.close()


# ── 用户账号 ──────────────────────────────────────────────


def register_user(email: str, password: str) -> dict:
    """
    注册普通用户，初始积分为 0。

    Returns:
        {"id": int, "email": str, "coins": 0}

    Raises:
        ValueError: 邮箱格式错误、密码过短或邮箱已注册。
    """
    email = (email or "").strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValueError("邮箱格式不正确")
    if len(password or "") < 6:
        raise ValueError("密码至少6个字符")

    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        cursor = db.execute(
            """INSERT INTO users (email, password_hash, coins, created_at, updated_at)
               VALUES (?, ?, 0, ?, ?)""",
            (email, hash_password(password), now, now),
        )
        db.commit()
        return {"id": cursor.lastrowid, "email": email, "coins": 0}
    except sqlite3.IntegrityError as e:
        db.rollback()
        raise ValueError("该邮箱已被注册") from e
    finally:
        db.close()


def authenticate_user(email: str, password: str) -> dict:
    """
    验证用户邮箱和密码，锁定策略与管理员一致。

    Returns:
        {"code": 1, "token": "...", "user": {"id", "email", "coins"}}

    Raises:
        ValueError: 认证失败。
    """
    email = (email or "").strip().lower()
    db = get_db()
    try:
        user = db.execute(
            "SELECT * FROM users WHERE email = ?", (email,)
        ).fetchone()
        if not user:
            raise ValueError("邮箱或密码错误")

        if user["account_locked_until"]:
            if _is_locked(user["account_locked_until"]):
                raise ValueError("账号已锁定，请稍后再试")
            db.execute(
                "UPDATE users SET failed_login_attempts = 0, account_locked_until = NULL WHERE id = ?",
                (user["id"],),
            )
            db.commit()
            user = db.execute(
                "SELECT * FROM users WHERE id = ?", (user["id"],)
            ).fetchone()

        if not verify_password(password, user["password_hash"]):
            fail_count = (user["failed_login_attempts"] or 0) + 1
            locked_until = _lock_time() if fail_count >= MAX_LOGIN_FAILURES else None
            db.execute(
                """UPDATE users SET failed_login_attempts = ?, account_locked_until = ?
                   WHERE id = ?""",
                (fail_count, locked_until, user["id"]),
            )
            db.commit()
            raise ValueError("邮箱或密码错误")

        db.execute(
            "UPDATE users SET failed_login_attempts = 0, account_locked_until = NULL WHERE id = ?",
            (user["id"],),
        )
        db.commit()

        return {
            "code": 1,
            "token": create_token(str(user["id"]), ROLE_USER),
            "user": {"id": user["id"], "email": user["email"], "coins": user["coins"] or 0},
        }
    finally:
        db.close()


# ── FastAPI 依赖项 ────────────────────────────────────────


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get("token")


def get_current_admin(request: Request) -> dict:
    """
    FastAPI 依赖项：从 Authorization header (Bearer) 或 cookie 中提取并验证管理员 JWT。

    Raises:
        HTTPException(401): 令牌缺失、无效或不是管理员令牌。
    """
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")

    try:
        payload = verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")

    if payload.get("role", ROLE_ADMIN) != ROLE_ADMIN:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")
    return payload


def _load_user(user_id: str) -> dict | None:
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        return None
    db = get_db()
    try:
        row = db.execute("SELECT * FROM users WHERE id = ?", (uid,)).fetchone()
        return dict(row) if row else None
    finally:
        db.close()


def get_current_user(request: Request) -> dict:
    """
    FastAPI 依赖项：验证用户 JWT 并返回数据库中的最新用户记录。

    Raises:
        HTTPException(401): 未登录或会话已过期。
    """
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="未登录或会话已过期")

    try:
        payload = verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="未登录或会话已过期")

    if payload.get("role") != ROLE_USER:
        raise HTTPException(status_code=401, detail="未登录或会话已过期")

    user = _load_user(payload["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="未登录或会话已过期")
    return user


def get_optional_user(request: Request) -> dict | None:
    """与 get_current_user 相同，但未登录时返回 None。"""
    try:
        return get_current_user(request)
    except HTTPException:
        return None
