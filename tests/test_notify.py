"""网关异步通知处理单元测试：验签、金额核对、幂等结算、自动购买。"""

import json
import os
import sqlite3
import tempfile
from concurrent.futures import ThreadPoolExecutor

import pytest

# 在导入 learnmart 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="notify_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-notify"

import learnmart.database as _db_mod
from learnmart.database import get_db, init_db
from learnmart.services.auth import register_user
from learnmart.services.gateway_config import save_gateway_settings
from learnmart.services.notify_service import (
    SETTLE_DUPLICATE,
    SETTLE_NOT_FOUND,
    SETTLE_PAID,
    NotifyError,
    NotifyService,
)
from learnmart.services.order_service import OrderService
from learnmart.services.purchase_service import ResourceService
from learnmart.services.sign import generate_sign

MERCHANT_KEY = "merchant-key"


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库并配置网关。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS notify_logs;
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS user_purchases;
        DROP TABLE IF EXISTS resources;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS system_config;
        DROP TABLE IF EXISTS admin;
    """)
    conn.close()
    init_db()
    save_gateway_settings("https://pay.example.com", "1001", MERCHANT_KEY)
    yield


@pytest.fixture
def svc():
    return NotifyService()


@pytest.fixture
def user():
    return register_user("payer@example.com", "secret123")


def _notify_params(order, key=MERCHANT_KEY, **overrides):
    """构建网关通知参数（带签名）。"""
    params = {
        "pid": "1001",
        "trade_no": "GW2025010100001",
        "out_trade_no": order.order_no,
        "type": "alipay",
        "name": "积分充值",
        "money": f"{order.amount:.2f}",
        "trade_status": "TRADE_SUCCESS",
    }
    params.update(overrides)
    params["sign"] = generate_sign(params, key)
    params["sign_type"] = "MD5"
    return params


def _coins(user_id):
    db = get_db()
    try:
        return db.execute("SELECT coins FROM users WHERE id = ?", (user_id,)).fetchone()["coins"]
    finally:
        db.close()


def _status(order_no):
    db = get_db()
    try:
        return db.execute(
            "SELECT status FROM orders WHERE order_no = ?", (order_no,)
        ).fetchone()["status"]
    finally:
        db.close()


def _log_results(order_no):
    db = get_db()
    try:
        rows = db.execute(
            "SELECT result FROM notify_logs WHERE order_no = ? ORDER BY id", (order_no,)
        ).fetchall()
        return [r["result"] for r in rows]
    finally:
        db.close()


class TestVerify:

    def test_valid(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        row = svc.verify(_notify_params(order))
        assert row["order_no"] == order.order_no

    def test_bad_sign(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        with pytest.raises(NotifyError) as exc:
            svc.verify(_notify_params(order, key="wrong-key"))
        assert exc.value.reason == "bad_sign"

    def test_bad_pid(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        with pytest.raises(NotifyError) as exc:
            svc.verify(_notify_params(order, pid="2002"))
        assert exc.value.reason == "bad_pid"

    def test_not_success(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        with pytest.raises(NotifyError) as exc:
            svc.verify(_notify_params(order, trade_status="WAIT_BUYER_PAY"))
        assert exc.value.reason == "not_success"

    def test_unknown_order(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        with pytest.raises(NotifyError) as exc:
            svc.verify(_notify_params(order, out_trade_no="NOPE"))
        assert exc.value.reason == SETTLE_NOT_FOUND

    def test_amount_mismatch(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        with pytest.raises(NotifyError) as exc:
            svc.verify(_notify_params(order, money="0.01"))
        assert exc.value.reason == "amount_mismatch"

    def test_equivalent_amount_format(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        svc.verify(_notify_params(order, money="10"))


class TestHandleNotify:

    def test_topup_credits_coins(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        assert svc.handle_notify(_notify_params(order)) is True

        assert _status(order.order_no) == "paid"
        assert _coins(user["id"]) == 10
        assert _log_results(order.order_no) == [SETTLE_PAID]

        db = get_db()
        row = db.execute(
            "SELECT paid_at, api_trade_no FROM orders WHERE order_no = ?", (order.order_no,)
        ).fetchone()
        db.close()
        assert row["paid_at"] is not None
        assert row["api_trade_no"] == "GW2025010100001"

    def test_duplicate_credits_once(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        params = _notify_params(order)
        assert svc.handle_notify(params) is True
        assert svc.handle_notify(params) is True
        assert svc.handle_notify(params) is True

        assert _coins(user["id"]) == 10
        assert _log_results(order.order_no) == [SETTLE_PAID, SETTLE_DUPLICATE, SETTLE_DUPLICATE]

    def test_concurrent_duplicates_credit_once(self, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        params = _notify_params(order)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: NotifyService().handle_notify(params), range(4)))

        assert all(results)
        assert _coins(user["id"]) == 10
        assert _log_results(order.order_no).count(SETTLE_PAID) == 1

    def test_rejected_notify_logged(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        assert svc.handle_notify(_notify_params(order, money="1.00")) is False
        assert _status(order.order_no) == "pending"
        assert _coins(user["id"]) == 0
        assert _log_results(order.order_no) == ["amount_mismatch"]

        db = get_db()
        row = db.execute("SELECT params FROM notify_logs").fetchone()
        db.close()
        assert json.loads(row["params"])["money"] == "1.00"

    def test_bad_sign_does_not_pay(self, svc, user):
        order = OrderService().create_order(user_id=user["id"], amount="10")
        assert svc.handle_notify(_notify_params(order, key="forged")) is False
        assert _status(order.order_no) == "pending"

    def test_late_payment_for_closed_order(self, svc, user):
        """已关闭订单收到支付通知：保持 failed，不加积分，回复 success。"""
        order = OrderService().create_order(user_id=user["id"], amount="10")
        OrderService().close_order(order.order_no)

        assert svc.handle_notify(_notify_params(order)) is True
        assert _status(order.order_no) == "failed"
        assert _coins(user["id"]) == 0
        assert _log_results(order.order_no) == ["order_closed"]


class TestAutoPurchase:

    def test_resource_unlocked_after_payment(self, svc, user):
        resource = ResourceService().create_resource("Go 并发", price=10, resource_url="https://cdn/go.pdf")
        order = OrderService().create_order(user_id=user["id"], resource_id=resource.id)

        assert svc.handle_notify(_notify_params(order)) is True

        # 到账 10 积分后立即扣除 10 积分购买
        assert _coins(user["id"]) == 0
        db = get_db()
        row = db.execute(
            "SELECT price FROM user_purchases WHERE user_id = ? AND resource_id = ?",
            (user["id"], resource.id),
        ).fetchone()
        db.close()
        assert row["price"] == 10

    def test_already_owned_keeps_coins(self, svc, user):
        resource = ResourceService().create_resource("Go 并发", price=10)
        order = OrderService().create_order(user_id=user["id"], resource_id=resource.id)

        db = get_db()
        db.execute(
            "INSERT INTO user_purchases (user_id, resource_id, price) VALUES (?, ?, 0)",
            (user["id"], resource.id),
        )
        db.commit()
        db.close()

        assert svc.handle_notify(_notify_params(order)) is True
        assert _coins(user["id"]) == 10

    def test_duplicate_does_not_charge_twice(self, svc, user):
        resource = ResourceService().create_resource("Go 并发", price=6)
        order = OrderService().create_order(user_id=user["id"], amount="10", resource_id=None)
        # 纯充值后手动关联资源，模拟充值金额大于价格
        db = get_db()
        db.execute(
            "UPDATE orders SET resource_id = ? WHERE order_no = ?",
            (resource.id, order.order_no),
        )
        db.commit()
        db.close()

        params = _notify_params(order)
        svc.handle_notify(params)
        svc.handle_notify(params)

        assert _coins(user["id"]) == 4
