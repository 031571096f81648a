"""learnmart/main.py 启动配置和路由注册测试。"""

import asyncio
import os
import sqlite3
import tempfile
from unittest.mock import patch, MagicMock

import pytest
from fastapi.testclient import TestClient

# 测试环境设置
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="main_test_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-main"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"
os.environ["TESTING"] = "1"

import learnmart.database as _db_mod
import learnmart.main as main_mod
from learnmart.database import init_db, get_db
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


class TestHealthEndpoint:

    def test_health_returns_ok(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestRouteRegistration:
    """路由注册验证：返回业务错误而非 404。"""

    def test_order_status_route_registered(self, client):
        resp = client.get("/api/payment/order/NOPE")
        assert resp.status_code == 404
        assert resp.json()["code"] == -1

    def test_notify_route_registered(self, client):
        resp = client.get("/api/payment/notify")
        assert resp.status_code == 200
        assert resp.text == "fail"

    def test_create_requires_login(self, client):
        resp = client.post("/api/payment/create", json={"amount": "1.00"})
        assert resp.status_code == 401

    def test_user_me_requires_login(self, client):
        assert client.get("/api/user/me").status_code == 401

    def test_admin_login_route_registered(self, client):
        resp = client.post("/v1/admin/auth/login", json={
            "username": "admin", "password": "wrong"
        })
        assert resp.status_code == 200
        assert resp.json()["code"] == -1

    def test_unknown_path_404(self, client):
        assert client.get("/some-random-page").status_code == 404


class TestStartupEvent:

    def test_init_db_called_on_startup(self):
        with TestClient(app):
            db = get_db()
            try:
                row = db.execute(
                    "SELECT COUNT(*) AS cnt FROM sqlite_master WHERE type='table' AND name='orders'"
                ).fetchone()
                assert row["cnt"] == 1
            finally:
                db.close()

    def test_background_tasks_skipped_in_testing(self):
        os.environ["TESTING"] = "1"
        with patch("asyncio.create_task") as mock_create:
            with TestClient(app):
                mock_create.assert_not_called()


class TestOrderExpiryTask:
    """后台订单过期任务：调用 expire_orders，异常只记录日志。"""

    def test_calls_expire_and_survives_errors(self):
        svc = MagicMock()
        svc.expire_orders.side_effect = [RuntimeError("db locked"), 2]
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) >= 2:
                raise asyncio.CancelledError()

        with patch("learnmart.services.order_service.OrderService", return_value=svc), \
                patch.object(main_mod.asyncio, "sleep", fake_sleep):
            with pytest.raises(asyncio.CancelledError):
                asyncio.run(main_mod._order_expiry_task())

        assert svc.expire_orders.call_count == 2
        assert sleeps == [main_mod.ORDER_EXPIRY_INTERVAL] * 2
