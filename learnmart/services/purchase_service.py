"""
资源与购买服务：资源查询/创建、积分购买、购买记录查询。

购买规则：
- 已购买过：直接返回资源链接，不重复扣积分
- 免费资源或有效会员：记录 0 积分购买
- 其余情况：积分足够则扣除积分并记录购买，否则报“积分不足”
"""

import logging
import sqlite3
from datetime import datetime

from learnmart.database import get_db
from learnmart.models.schemas import Resource

logger = logging.getLogger(__name__)


class PurchaseError(Exception):
    """购买失败，携带建议的 HTTP 状态码和附加字段。"""

    def __init__(self, msg: str, status_code: int = 400, extra: dict | None = None):
        super().__init__(msg)
        self.status_code = status_code
        self.extra = extra or {}


def membership_valid(user: dict) -> bool:
    """会员类型存在且未过期（无到期时间视为长期有效）。"""
    if not user.get("membership_type"):
        return False
    expire = user.get("membership_expire_time")
    if not expire:
        return True
    try:
        return datetime.strptime(expire, "%Y-%m-%d %H:%M:%S") > datetime.now()
    except (TypeError, ValueError):
        return False


class ResourceService:
    """资源查询与创建。"""

    def create_resource(
        self,
        title: str,
        price: int = 0,
        is_free: bool = False,
        resource_url: str | None = None,
    ) -> Resource:
        """
        创建资源。

        Raises:
            ValueError: 标题为空或价格为负数。
        """
        title = (title or "").strip()
        if not title:
            raise ValueError("资源标题不能为空")
        if price < 0:
            raise ValueError("资源价格不能为负数")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO resources (title, price, is_free, resource_url, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (title, price, 1 if is_free else 0, resource_url, now, now),
            )
            db.commit()
            return Resource(
                id=cursor.lastrowid,
                title=title,
                price=price,
                is_free=1 if is_free else 0,
                resource_url=resource_url,
                created_at=now,
                updated_at=now,
            )
        finally:
            db.close()

    def get_resource(self, resource_id: int) -> dict | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            db.close()


class PurchaseService:
    """积分购买资源。"""

    def has_purchased(self, user_id: int, resource_id: int) -> bool:
        db = get_db()
        try:
            row = db.execute(
                "SELECT 1 FROM user_purchases WHERE user_id = ? AND resource_id = ?",
                (user_id, resource_id),
            ).fetchone()
            return row is not None
        finally:
            db.close()

    def list_purchases(self, user_id: int) -> list[dict]:
        """获取用户购买记录（附带资源标题），按购买时间倒序。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT p.id, p.resource_id, p.price, p.purchase_time,
                          r.title, r.resource_url
                   FROM user_purchases p
                   LEFT JOIN resources r ON r.id = p.resource_id
                   WHERE p.user_id = ?
                   ORDER BY p.purchase_time DESC, p.id DESC""",
                (user_id,),
            ).fetchall()
            return [
                {
                    "id": r["id"],
                    "resource_id": r["resource_id"],
                    "price": r["price"],
                    "purchase_time": r["purchase_time"],
                    "resource": {
                        "title": r["title"] or "未知资源",
                        "resource_url": r["resource_url"],
                    },
                }
                for r in rows
            ]
        finally:
            db.close()

    def purchase_in_transaction(
        self, db: sqlite3.Connection, user: dict, resource: dict
    ) -> dict:
        """
        在调用方已开启的事务内执行购买，不提交。

        user 需包含 id、coins、membership_type、membership_expire_time；
        coins 以数据库当前值为准。

        Raises:
            PurchaseError: 积分不足。
        """
        existing = db.execute(
            "SELECT 1 FROM user_purchases WHERE user_id = ? AND resource_id = ?",
            (user["id"], resource["id"]),
        ).fetchone()
        if existing:
            return {
                "success": True,
                "message": "您已购买过此资源",
                "resource_url": resource["resource_url"],
                "remaining_coins": user["coins"] or 0,
                "charged": 0,
            }

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        if resource["is_free"] or membership_valid(user):
            db.execute(
                """INSERT INTO user_purchases (user_id, resource_id, price, purchase_time)
                   VALUES (?, ?, 0, ?)""",
                (user["id"], resource["id"], now),
            )
            message = "免费资源获取成功" if resource["is_free"] else "会员资源获取成功"
            return {
                "success": True,
                "message": message,
                "resource_url": resource["resource_url"],
                "remaining_coins": user["coins"] or 0,
                "charged": 0,
            }

        price = int(resource["price"] or 0)
        cursor = db.execute(
            """UPDATE users SET coins = coins - ?, updated_at = ?
               WHERE id = ? AND coins >= ?""",
            (price, now, user["id"], price),
        )
        if cursor.rowcount == 0:
            available = db.execute(
                "SELECT coins FROM users WHERE id = ?", (user["id"],)
            ).fetchone()
            raise PurchaseError(
                "积分不足",
                status_code=400,
                extra={
                    "required": price,
                    "available": available["coins"] if available else 0,
                },
            )

        db.execute(
            """INSERT INTO user_purchases (user_id, resource_id, price, purchase_time)
               VALUES (?, ?, ?, ?)""",
            (user["id"], resource["id"], price, now),
        )
        remaining = db.execute(
            "SELECT coins FROM users WHERE id = ?", (user["id"],)
        ).fetchone()["coins"]

        return {
            "success": True,
            "message": f"购买成功，已扣除{price}积分",
            "resource_url": resource["resource_url"],
            "remaining_coins": remaining,
            "charged": price,
        }

    def purchase(self, user_id: int, resource_id: int) -> dict:
        """
        用户购买资源。

        Returns:
            {"success": True, "message", "resource_url", "remaining_coins", "charged"}

        Raises:
            PurchaseError: 用户或资源不存在（404）、积分不足（400）。
        """
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            user = db.execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            if not user:
                raise PurchaseError("用户不存在", status_code=404)
            resource = db.execute(
                "SELECT * FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
            if not resource:
                raise PurchaseError("资源不存在", status_code=404)

            result = self.purchase_in_transaction(db, dict(user), dict(resource))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if result["charged"]:
            logger.info(
                "资源购买成功: user_id=%d, resource_id=%d, price=%d",
                user_id, resource_id, result["charged"],
            )
        return result
