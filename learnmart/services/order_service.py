"""
订单服务模块：创建充值订单、生成支付参数、订单状态查询、订单过期处理。
"""

import logging
import os
import random
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_UP

from learnmart.database import get_db
from learnmart.models.schemas import (
    ORDER_FAILED,
    ORDER_PENDING,
    Order,
)
from learnmart.services.gateway_config import (
    ALLOWED_PAYMENT_TYPES,
    GatewayConfigError,
    get_gateway_settings,
)
from learnmart.services.sign import sign_params

logger = logging.getLogger(__name__)

SITE_URL = os.getenv("SITE_URL", "http://localhost:8000").rstrip("/")
COINS_PER_YUAN = int(os.getenv("COINS_PER_YUAN", "1"))
ORDER_EXPIRE_MINUTES = int(os.getenv("ORDER_EXPIRE_MINUTES", "30"))

MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("10000.00")

RESULT_PATH = "/payment/result"
NOTIFY_PATH = "/api/payment/notify"


class OrderCreateError(Exception):
    """订单创建失败，携带建议的 HTTP 状态码。"""

    def __init__(self, msg: str, status_code: int = 400):
        super().__init__(msg)
        self.status_code = status_code


class OrderNotFoundError(Exception):
    """订单不存在。"""
    pass


def amount_for_price(price: int) -> Decimal:
    """资源积分价格换算为支付金额（元），向上取整到分。"""
    return (Decimal(price) / Decimal(COINS_PER_YUAN)).quantize(
        Decimal("0.01"), rounding=ROUND_UP
    )


def coins_for_amount(amount: Decimal) -> int:
    """支付金额换算为到账积分，不足 1 积分的部分舍去。"""
    return int((amount * COINS_PER_YUAN).to_integral_value(rounding=ROUND_DOWN))


class OrderService:
    """订单服务：创建订单、构建支付参数、状态查询、过期处理。"""

    def generate_order_no(self) -> str:
        """
        生成唯一商户订单号：yyMMddHHmmss + 6 位随机数字。
        """
        db = get_db()
        try:
            for _ in range(10):
                ts = datetime.now().strftime("%y%m%d%H%M%S")
                order_no = ts + f"{random.randint(0, 999999):06d}"
                row = db.execute(
                    "SELECT 1 FROM orders WHERE order_no = ?", (order_no,)
                ).fetchone()
                if not row:
                    return order_no
            raise OrderCreateError("无法生成唯一订单号，请重试", status_code=500)
        finally:
            db.close()

    def _parse_amount(self, amount) -> Decimal:
        try:
            value = Decimal(str(amount)).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            raise OrderCreateError("金额格式无效")
        if not value.is_finite():
            raise OrderCreateError("金额格式无效")
        if value < MIN_AMOUNT or value > MAX_AMOUNT:
            raise OrderCreateError(f"充值金额需在 {MIN_AMOUNT} 到 {MAX_AMOUNT} 元之间")
        return value

    def create_order(
        self,
        user_id: int,
        resource_id: int | None = None,
        amount: str | int | float | None = None,
        payment_method: str = "alipay",
    ) -> Order:
        """
        创建待支付订单。

        - 指定 resource_id：按资源价格计算金额，支付到账后自动购买该资源
        - 仅指定 amount：纯积分充值

        Raises:
            OrderCreateError: 参数无效、资源不存在/免费/已购买等。
        """
        if payment_method not in ALLOWED_PAYMENT_TYPES:
            raise OrderCreateError("不支持的支付方式")
        if resource_id is None and amount is None:
            raise OrderCreateError("缺少 resource_id 或 amount 参数")
        if resource_id is not None and amount is not None:
            raise OrderCreateError("resource_id 与 amount 只能指定一个")

        if resource_id is not None:
            db = get_db()
            try:
                resource = db.execute(
                    "SELECT id, price, is_free FROM resources WHERE id = ?",
                    (resource_id,),
                ).fetchone()
                purchased = db.execute(
                    "SELECT 1 FROM user_purchases WHERE user_id = ? AND resource_id = ?",
                    (user_id, resource_id),
                ).fetchone()
            finally:
                db.close()

            if not resource:
                raise OrderCreateError("资源不存在", status_code=404)
            if resource["is_free"]:
                raise OrderCreateError("免费资源无需支付")
            if purchased:
                raise OrderCreateError("您已购买过此资源", status_code=409)
            order_amount = amount_for_price(resource["price"] or 0)
            if order_amount < MIN_AMOUNT:
                raise OrderCreateError("资源价格无效")
        else:
            order_amount = self._parse_amount(amount)

        coins = coins_for_amount(order_amount)
        order_no = self.generate_order_no()
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO orders
                   (order_no, user_id, resource_id, amount, coins, status,
                    payment_method, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    order_no, user_id, resource_id, str(order_amount), coins,
                    ORDER_PENDING, payment_method, now,
                ),
            )
            db.commit()
            order_id = cursor.lastrowid
        except Exception as e:
            db.rollback()
            raise OrderCreateError(f"订单创建失败: {e}", status_code=500)
        finally:
            db.close()

        logger.info(
            "订单创建成功: order_no=%s, user_id=%d, resource_id=%s, amount=%s",
            order_no, user_id, resource_id, order_amount,
        )

        return Order(
            id=order_id,
            order_no=order_no,
            user_id=user_id,
            amount=order_amount,
            coins=coins,
            resource_id=resource_id,
            status=ORDER_PENDING,
            payment_method=payment_method,
            created_at=now,
        )

    def get_order(self, order_no: str) -> Order | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE order_no = ?", (order_no,)
            ).fetchone()
            return Order.from_row(row) if row else None
        finally:
            db.close()

    def _order_name(self, order: Order) -> str:
        if order.resource_id is not None:
            db = get_db()
            try:
                row = db.execute(
                    "SELECT title FROM resources WHERE id = ?", (order.resource_id,)
                ).fetchone()
            finally:
                db.close()
            if row:
                return row["title"]
        return f"积分充值 {order.coins}"

    def build_payment_descriptor(self, order: Order) -> dict:
        """
        构建提交到易支付网关的支付参数。

        Returns:
            {"payment_url": str, "payment_params": dict}，参数已签名，需原样提交。

        Raises:
            GatewayConfigError: 网关未配置。
        """
        settings = get_gateway_settings()
        if not settings:
            raise GatewayConfigError("支付网关尚未配置")

        params = {
            "pid": settings["pid"],
            "type": order.payment_method,
            "out_trade_no": order.order_no,
            "notify_url": SITE_URL + NOTIFY_PATH,
            "return_url": SITE_URL + RESULT_PATH,
            "name": self._order_name(order),
            "money": f"{order.amount:.2f}",
        }
        return {
            "payment_url": settings["gateway_url"] + "/submit.php",
            "payment_params": sign_params(params, settings["key"]),
        }

    def get_order_status(self, order_no: str) -> dict:
        """
        只读查询订单状态，供支付结果弹窗轮询。

        Returns:
            {"order": {...}, "resource": {"id", "title"} | None}

        Raises:
            OrderNotFoundError: 订单不存在。
        """
        db = get_db()
        try:
            row = db.execute(
                """SELECT o.*, r.title AS resource_title
                   FROM orders o
                   LEFT JOIN resources r ON r.id = o.resource_id
                   WHERE o.order_no = ?""",
                (order_no,),
            ).fetchone()
        finally:
            db.close()

        if not row:
            raise OrderNotFoundError(f"订单 {order_no} 不存在")

        order = {
            "order_no": row["order_no"],
            "status": row["status"],
            "amount": f'{Decimal(str(row["amount"])):.2f}',
            "coins": row["coins"],
            "payment_method": row["payment_method"],
            "created_at": row["created_at"],
            "pay_time": row["paid_at"],
        }
        resource = None
        if row["resource_id"] is not None:
            resource = {"id": row["resource_id"], "title": row["resource_title"]}
        return {"order": order, "resource": resource}

    def close_order(self, order_no: str) -> None:
        """
        手动关闭待支付订单（pending → failed）。

        Raises:
            OrderNotFoundError: 订单不存在。
            OrderCreateError: 订单不是待支付状态（409）。
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders SET status = ?, closed_at = ?
                   WHERE order_no = ? AND status = ?""",
                (ORDER_FAILED, now, order_no, ORDER_PENDING),
            )
            db.commit()
            if cursor.rowcount == 0:
                row = db.execute(
                    "SELECT status FROM orders WHERE order_no = ?", (order_no,)
                ).fetchone()
                if not row:
                    raise OrderNotFoundError(f"订单 {order_no} 不存在")
                raise OrderCreateError("仅待支付订单可关闭", status_code=409)
        finally:
            db.close()
        logger.info("订单已手动关闭: order_no=%s", order_no)

    def expire_orders(self) -> int:
        """
        将超过 ORDER_EXPIRE_MINUTES 分钟未支付的订单标记为 failed。

        Returns:
            本次关闭的订单数。
        """
        cutoff = (datetime.now() - timedelta(minutes=ORDER_EXPIRE_MINUTES)).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders
                   SET status = ?, closed_at = ?
                   WHERE status = ? AND created_at < ?""",
                (ORDER_FAILED, now, ORDER_PENDING, cutoff),
            )
            db.commit()
            if cursor.rowcount:
                logger.info("已关闭超时订单 %d 笔", cursor.rowcount)
            return cursor.rowcount
        finally:
            db.close()
