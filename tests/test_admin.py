"""管理后台路由测试：订单列表/详情/导出/关闭、网关设置、资源录入、改密码。"""

import os
import sqlite3
import tempfile
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

# 在导入 learnmart 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="admin_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-admin"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"

import learnmart.database as _db_mod
from learnmart.database import get_db, init_db
from learnmart.main import app


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
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
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def headers(client):
    resp = client.post("/v1/admin/auth/login", json={
        "username": "admin", "password": "admin123",
    })
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def _create_user(db, email="buyer@example.com") -> int:
    cursor = db.execute(
        "INSERT INTO users (email, password_hash) VALUES (?, 'x')", (email,)
    )
    db.commit()
    return cursor.lastrowid


def _create_order(db, user_id, order_no, status="pending", amount="10.00", created_at=None):
    now = created_at or datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db.execute(
        """INSERT INTO orders (order_no, user_id, amount, coins, status, payment_method, created_at)
           VALUES (?, ?, ?, ?, ?, 'alipay', ?)""",
        (order_no, user_id, amount, int(float(amount)), status, now),
    )
    db.commit()


def _create_notify_log(db, order_no, result="paid"):
    db.execute(
        "INSERT INTO notify_logs (order_no, params, result) VALUES (?, '{}', ?)",
        (order_no, result),
    )
    db.commit()


# ── 订单列表 ──


class TestOrderList:

    def test_without_token_returns_401(self, client):
        assert client.get("/v1/admin/orders").status_code == 401

    def test_empty(self, client, headers):
        data = client.get("/v1/admin/orders", headers=headers).json()
        assert data["code"] == 1
        assert data["orders"] == []
        assert data["total"] == 0
        assert data["total_pages"] == 1

    def test_order_fields(self, client, headers):
        db = get_db()
        try:
            uid = _create_user(db)
            _create_order(db, uid, "ORD123", amount="25.50")
        finally:
            db.close()
        order = client.get("/v1/admin/orders", headers=headers).json()["orders"][0]
        assert order["order_no"] == "ORD123"
        assert order["email"] == "buyer@example.com"
        assert order["amount"] == "25.50"
        assert order["status"] == "pending"
        assert order["status_text"] == "待支付"

    def test_filter_by_status(self, client, headers):
        db = get_db()
        try:
            uid = _create_user(db)
            _create_order(db, uid, "A1", status="pending")
            _create_order(db, uid, "A2", status="paid")
            _create_order(db, uid, "A3", status="failed")
        finally:
            db.close()
        data = client.get("/v1/admin/orders?status=paid", headers=headers).json()
        assert [o["order_no"] for o in data["orders"]] == ["A2"]

    def test_unknown_status(self, client, headers):
        data = client.get("/v1/admin/orders?status=refunded", headers=headers).json()
        assert data["code"] == -1

    def test_filter_by_user_and_order_no(self, client, headers):
        db = get_db()
        try:
            u1 = _create_user(db, "one@example.com")
            u2 = _create_user(db, "two@example.com")
            _create_order(db, u1, "250101000001")
            _create_order(db, u2, "250101000002")
        finally:
            db.close()
        data = client.get(f"/v1/admin/orders?user_id={u2}", headers=headers).json()
        assert [o["order_no"] for o in data["orders"]] == ["250101000002"]

        data = client.get("/v1/admin/orders?order_no=0001", headers=headers).json()
        assert [o["order_no"] for o in data["orders"]] == ["250101000001"]

    def test_pagination(self, client, headers):
        db = get_db()
        try:
            uid = _create_user(db)
            for i in range(25):
                _create_order(db, uid, f"P{i:03d}", created_at=f"2025-01-01 10:00:{i:02d}")
        finally:
            db.close()
        data = client.get("/v1/admin/orders?page=2&per_page=10", headers=headers).json()
        assert data["total"] == 25
        assert data["total_pages"] == 3
        assert len(data["orders"]) == 10
        # 按创建时间倒序
        assert data["orders"][0]["order_no"] == "P014"


class TestOrderDetail:

    def test_detail_with_logs(self, client, headers):
        db = get_db()
        try:
            uid = _create_user(db)
            _create_order(db, uid, "ORD123", status="paid")
            _create_notify_log(db, "ORD123", "paid")
            _create_notify_log(db, "ORD123", "duplicate")
        finally:
            db.close()
        data = client.get("/v1/admin/orders/ORD123", headers=headers).json()
        assert data["code"] == 1
        assert data["order"]["order_no"] == "ORD123"
        assert [log["result"] for log in data["notify_logs"]] == ["duplicate", "paid"]

    def test_not_found(self, client, headers):
        assert client.get("/v1/admin/orders/NOPE", headers=headers).status_code == 404


class TestCloseOrder:

    def test_close_pending(self, client, headers):
        db = get_db()
        try:
            uid = _create_user(db)
            _create_order(db, uid, "ORD123")
        finally:
            db.close()
        data = client.post("/v1/admin/orders/ORD123/close", headers=headers).json()
        assert data["code"] == 1
        status = client.get("/api/payment/order/ORD123").json()["order"]["status"]
        assert status == "failed"

    def test_close_paid_rejected(self, client, headers):
        db = get_db()
        try:
            uid = _create_user(db)
            _create_order(db, uid, "ORD123", status="paid")
        finally:
            db.close()
        data = client.post("/v1/admin/orders/ORD123/close", headers=headers).json()
        assert data["code"] == -1
        assert data["msg"] == "仅待支付订单可关闭"

    def test_close_missing(self, client, headers):
        resp = client.post("/v1/admin/orders/NOPE/close", headers=headers)
        assert resp.status_code == 404


class TestExportOrders:

    def test_export_csv(self, client, headers):
        db = get_db()
        try:
            uid = _create_user(db)
            _create_order(db, uid, "CSV001", status="paid")
        finally:
            db.close()
        resp = client.get("/v1/admin/orders/export", headers=headers)
        assert resp.status_code == 200
        assert "text/csv" in resp.headers["content-type"]
        lines = resp.text.strip().splitlines()
        assert lines[0].startswith("订单号")
        assert "CSV001" in lines[1]
        assert "已支付" in lines[1]

    def test_export_without_token(self, client):
        assert client.get("/v1/admin/orders/export").status_code == 401


# ── 网关设置 ──


class TestGatewaySettings:

    def test_save_and_read(self, client, headers):
        resp = client.put("/v1/admin/settings/gateway", headers=headers, json={
            "gateway_url": "https://pay.example.com", "pid": "1001", "key": "k3y",
        })
        assert resp.json()["code"] == 1

        data = client.get("/v1/admin/settings/gateway", headers=headers).json()
        assert data["gateway"]["configured"] is True
        assert data["gateway"]["pid"] == "1001"
        assert "k3y" not in str(data)

    def test_invalid_url(self, client, headers):
        resp = client.put("/v1/admin/settings/gateway", headers=headers, json={
            "gateway_url": "pay.example.com", "pid": "1001", "key": "k3y",
        })
        assert resp.json()["code"] == -1

    def test_requires_admin(self, client):
        assert client.get("/v1/admin/settings/gateway").status_code == 401


# ── 资源录入 ──


class TestCreateResource:

    def test_create(self, client, headers):
        data = client.post("/v1/admin/resources", headers=headers, json={
            "title": "FastAPI 实战", "price": 30, "resource_url": "https://cdn/fastapi.pdf",
        }).json()
        assert data["code"] == 1
        resource_id = data["resource"]["id"]

        detail = client.get(f"/api/resources/{resource_id}").json()
        assert detail["resource"]["title"] == "FastAPI 实战"
        assert detail["resource"]["price"] == 30

    def test_invalid(self, client, headers):
        data = client.post("/v1/admin/resources", headers=headers, json={
            "title": "", "price": 1,
        }).json()
        assert data["code"] == -1


# ── 修改密码 ──


class TestChangePassword:

    def test_change_password(self, client, headers):
        resp = client.post("/v1/admin/auth/password", headers=headers, json={
            "old_password": "admin123", "new_password": "newpass456",
        })
        assert resp.json()["code"] == 1

        login = client.post("/v1/admin/auth/login", json={
            "username": "admin", "password": "newpass456",
        })
        assert login.json()["code"] == 1

    def test_wrong_old_password(self, client, headers):
        resp = client.post("/v1/admin/auth/password", headers=headers, json={
            "old_password": "wrong", "new_password": "newpass456",
        })
        assert resp.json()["code"] == -1

    def test_too_short(self, client, headers):
        resp = client.post("/v1/admin/auth/password", headers=headers, json={
            "old_password": "admin123", "new_password": "123",
        })
        assert resp.json()["code"] == -1
