"""
支付网关异步通知处理：验签、核对订单与金额、结算订单。

订单状态只由这里写为 paid。结算在一个 BEGIN IMMEDIATE 事务内完成：
1. UPDATE orders ... WHERE status = 'pending'（只有一个通知能命中）
2. 给用户加积分
3. 订单关联资源时自动购买该资源
重复通知命中 0 行，不会重复加积分。每次通知都记录到 notify_logs 表。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from learnmart.database import get_db
from learnmart.models.schemas import ORDER_PAID, ORDER_PENDING
from learnmart.services.gateway_config import get_gateway_settings
from learnmart.services.purchase_service import PurchaseError, PurchaseService
from learnmart.services.sign import verify_sign

logger = logging.getLogger(__name__)

TRADE_SUCCESS = "TRADE_SUCCESS"

# 结算结果
SETTLE_PAID = "paid"
SETTLE_DUPLICATE = "duplicate"
SETTLE_CLOSED = "order_closed"
SETTLE_NOT_FOUND = "order_not_found"


class NotifyError(Exception):
    """通知校验失败，reason 为记录到 notify_logs 的结果码。"""

    def __init__(self, reason: str, msg: str):
        super().__init__(msg)
        self.reason = reason


class NotifyService:
    """网关通知服务。"""

    def _log_notify(self, order_no: str | None, params: dict, result: str) -> None:
        """记录通知日志到 notify_logs 表。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """INSERT INTO notify_logs (order_no, params, result, created_at)
                   VALUES (?, ?, ?, ?)""",
                (order_no, json.dumps(params, ensure_ascii=False), result, now),
            )
            db.commit()
        finally:
            db.close()

    def verify(self, params: dict) -> dict:
        """
        校验通知参数：签名、商户 ID、交易状态、订单存在、金额一致。

        Returns:
            订单行字典。

        Raises:
            NotifyError: 任一校验失败。
        """
        settings = get_gateway_settings()
        if not settings:
            raise NotifyError("gateway_unconfigured", "支付网关尚未配置")

        if not verify_sign(params, settings["key"], params.get("sign")):
            raise NotifyError("bad_sign", "签名错误")

        if str(params.get("pid", "")) != str(settings["pid"]):
            raise NotifyError("bad_pid", "商户ID不匹配")

        if params.get("trade_status") != TRADE_SUCCESS:
            raise NotifyError("not_success", f"交易状态非成功: {params.get('trade_status')}")

        order_no = params.get("out_trade_no")
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM orders WHERE order_no = ?", (order_no,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise NotifyError(SETTLE_NOT_FOUND, "订单不存在")

        try:
            money = Decimal(str(params.get("money"))).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            raise NotifyError("amount_mismatch", "金额格式无效")
        if money != Decimal(str(row["amount"])).quantize(Decimal("0.01")):
            raise NotifyError("amount_mismatch", "支付金额与订单金额不一致")

        return dict(row)

    def settle_order(self, order_no: str, api_trade_no: str | None = None) -> str:
        """
        将待支付订单结算为已支付：加积分并自动购买关联资源。

        Returns:
            SETTLE_PAID / SETTLE_DUPLICATE / SETTLE_CLOSED / SETTLE_NOT_FOUND
        """
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            cursor = db.execute(
                """UPDATE orders SET status = ?, paid_at = ?, api_trade_no = ?
                   WHERE order_no = ? AND status = ?""",
                (ORDER_PAID, now, api_trade_no, order_no, ORDER_PENDING),
            )
            if cursor.rowcount == 0:
                row = db.execute(
                    "SELECT status FROM orders WHERE order_no = ?", (order_no,)
                ).fetchone()
                db.rollback()
                if not row:
                    return SETTLE_NOT_FOUND
                return SETTLE_DUPLICATE if row["status"] == ORDER_PAID else SETTLE_CLOSED

            order = db.execute(
                "SELECT * FROM orders WHERE order_no = ?", (order_no,)
            ).fetchone()
            db.execute(
                "UPDATE users SET coins = coins + ?, updated_at = ? WHERE id = ?",
                (order["coins"], now, order["user_id"]),
            )

            if order["resource_id"] is not None:
                self._auto_purchase(db, order)

            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "订单已支付: order_no=%s, user_id=%d, coins=%d",
            order_no, order["user_id"], order["coins"],
        )
        return SETTLE_PAID

    def _auto_purchase(self, db, order) -> None:
        """积分到账后自动购买订单关联资源；积分不足时保留积分，仅记录警告。"""
        user = db.execute(
            "SELECT * FROM users WHERE id = ?", (order["user_id"],)
        ).fetchone()
        resource = db.execute(
            "SELECT * FROM resources WHERE id = ?", (order["resource_id"],)
        ).fetchone()
        if not user or not resource:
            logger.warning(
                "自动购买跳过，用户或资源不存在: order_no=%s", order["order_no"]
            )
            return
        try:
            result = PurchaseService().purchase_in_transaction(db, dict(user), dict(resource))
            logger.info(
                "自动购买完成: order_no=%s, resource_id=%d, %s",
                order["order_no"], resource["id"], result["message"],
            )
        except PurchaseError as e:
            logger.warning(
                "自动购买失败，积分已保留: order_no=%s, reason=%s",
                order["order_no"], e,
            )

    def handle_notify(self, params: dict) -> bool:
        """
        处理一次网关通知。

        Returns:
            True 表示应向网关回复 "success"（含重复通知和已关闭订单），
            False 表示回复 "fail"。
        """
        order_no = params.get("out_trade_no")
        try:
            self.verify(params)
        except NotifyError as e:
            logger.warning("支付通知校验失败: order_no=%s, %s", order_no, e)
            self._log_notify(order_no, params, e.reason)
            return False

        result = self.settle_order(order_no, params.get("trade_no"))
        self._log_notify(order_no, params, result)

        if result == SETTLE_CLOSED:
            logger.error(
                "已关闭订单收到支付通知，需人工处理: order_no=%s, money=%s",
                order_no, params.get("money"),
            )
        elif result == SETTLE_DUPLICATE:
            logger.info("重复的支付通知已忽略: order_no=%s", order_no)

        return result != SETTLE_NOT_FOUND
