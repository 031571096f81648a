"""
管理后台路由：认证（登录、改密码）、订单管理、支付网关设置、资源录入。
"""

import csv
import io
import math
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from learnmart.database import get_db
from learnmart.models.schemas import ORDER_STATUSES
from learnmart.services.auth import (
    authenticate,
    get_current_admin,
    hash_password,
    verify_password,
)
from learnmart.services.gateway_config import (
    GatewayConfigError,
    get_gateway_status,
    save_gateway_settings,
)
from learnmart.services.order_service import (
    OrderCreateError,
    OrderNotFoundError,
    OrderService,
)
from learnmart.services.purchase_service import ResourceService

router = APIRouter(prefix="/v1/admin")

STATUS_MAP = {"pending": "待支付", "paid": "已支付", "failed": "已关闭"}


class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class GatewaySettingsRequest(BaseModel):
    gateway_url: str
    pid: str
    key: str


class CreateResourceRequest(BaseModel):
    title: str
    price: int = 0
    is_free: bool = False
    resource_url: str | None = None


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。

    成功返回 {code: 1, token: "..."}，失败返回 {code: -1, msg: "..."}。
    """
    try:
        result = authenticate(body.username, body.password)
        return JSONResponse(content=result)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


@router.post("/auth/password")
async def change_password(body: ChangePasswordRequest, admin: dict = Depends(get_current_admin)):
    if len(body.new_password) < 6:
        return JSONResponse(content={"code": -1, "msg": "新密码至少6个字符"})

    db = get_db()
    try:
        row = db.execute(
            "SELECT id, password_hash FROM admin WHERE username = ?", (admin["sub"],)
        ).fetchone()
        if not row or not verify_password(body.old_password, row["password_hash"]):
            return JSONResponse(content={"code": -1, "msg": "原密码错误"})
        db.execute(
            "UPDATE admin SET password_hash = ? WHERE id = ?",
            (hash_password(body.new_password), row["id"]),
        )
        db.commit()
        return JSONResponse(content={"code": 1, "msg": "密码已修改"})
    finally:
        db.close()


# ── 订单管理 ────────────────────────────────────────────────


def _build_order_filters(
    status: str | None,
    order_no: str | None,
    user_id: int | None,
    start_date: str | None,
    end_date: str | None,
):
    """构建订单筛选 SQL 条件和参数。"""
    conditions = []
    params = []
    if status:
        conditions.append("o.status = ?")
        params.append(status)
    if order_no:
        conditions.append("o.order_no LIKE ?")
        params.append(f"%{order_no}%")
    if user_id is not None:
        conditions.append("o.user_id = ?")
        params.append(user_id)
    if start_date:
        conditions.append("o.created_at >= ?")
        params.append(f"{start_date} 00:00:00")
    if end_date:
        conditions.append("o.created_at <= ?")
        params.append(f"{end_date} 23:59:59")
    return conditions, params


def _order_row(r) -> dict:
    return {
        "order_no": r["order_no"],
        "user_id": r["user_id"],
        "email": r["email"],
        "resource_id": r["resource_id"],
        "amount": f'{Decimal(str(r["amount"])):.2f}',
        "coins": r["coins"],
        "status": r["status"],
        "status_text": STATUS_MAP.get(r["status"], r["status"]),
        "payment_method": r["payment_method"],
        "api_trade_no": r["api_trade_no"] or "",
        "created_at": r["created_at"],
        "paid_at": r["paid_at"],
        "closed_at": r["closed_at"],
    }


_ORDER_SELECT = """SELECT o.*, u.email
                   FROM orders o
                   LEFT JOIN users u ON u.id = o.user_id"""


@router.get("/orders")
async def order_list(
    admin: dict = Depends(get_current_admin),
    status: str | None = Query(None),
    order_no: str | None = Query(None),
    user_id: int | None = Query(None),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """订单列表接口（支持筛选和分页）。"""
    if status and status not in ORDER_STATUSES:
        return JSONResponse(content={"code": -1, "msg": f"未知订单状态: {status}"})

    db = get_db()
    try:
        conditions, params = _build_order_filters(status, order_no, user_id, start_date, end_date)
        where_clause = " AND ".join(conditions) if conditions else "1=1"

        total = db.execute(
            f"SELECT COUNT(*) AS cnt FROM orders o WHERE {where_clause}", params
        ).fetchone()["cnt"]
        total_pages = max(1, math.ceil(total / per_page))

        offset = (page - 1) * per_page
        rows = db.execute(
            f"""{_ORDER_SELECT}
                WHERE {where_clause}
                ORDER BY o.created_at DESC, o.id DESC
                LIMIT ? OFFSET ?""",
            params + [per_page, offset],
        ).fetchall()

        return JSONResponse(content={
            "code": 1,
            "orders": [_order_row(r) for r in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": total_pages,
        })
    finally:
        db.close()


@router.get("/orders/export")
async def export_orders(
    admin: dict = Depends(get_current_admin),
    status: str | None = Query(None),
    order_no: str | None = Query(None),
    user_id: int | None = Query(None),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
):
    """导出订单列表为 CSV 文件。"""
    db = get_db()
    try:
        conditions, params = _build_order_filters(status, order_no, user_id, start_date, end_date)
        where_clause = " AND ".join(conditions) if conditions else "1=1"
        rows = db.execute(
            f"""{_ORDER_SELECT}
                WHERE {where_clause}
                ORDER BY o.created_at DESC, o.id DESC""",
            params,
        ).fetchall()

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "订单号", "用户ID", "用户邮箱", "资源ID", "金额", "积分",
            "支付状态", "支付方式", "网关流水号", "创建时间", "支付时间",
        ])
        for r in rows:
            o = _order_row(r)
            writer.writerow([
                o["order_no"], o["user_id"], o["email"] or "", o["resource_id"] or "",
                o["amount"], o["coins"], o["status_text"], o["payment_method"],
                o["api_trade_no"], o["created_at"], o["paid_at"] or "",
            ])

        output.seek(0)
        return StreamingResponse(
            iter([output.getvalue()]),
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=orders.csv"},
        )
    finally:
        db.close()


@router.get("/orders/{order_no}")
async def order_detail(order_no: str, admin: dict = Depends(get_current_admin)):
    """订单详情，附带网关通知日志。"""
    db = get_db()
    try:
        order = db.execute(
            f"{_ORDER_SELECT} WHERE o.order_no = ?", (order_no,)
        ).fetchone()
        if not order:
            return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})

        logs = db.execute(
            "SELECT * FROM notify_logs WHERE order_no = ? ORDER BY id DESC",
            (order_no,),
        ).fetchall()

        return JSONResponse(content={
            "code": 1,
            "order": _order_row(order),
            "notify_logs": [
                {
                    "id": log["id"],
                    "result": log["result"],
                    "params": log["params"],
                    "created_at": log["created_at"],
                }
                for log in logs
            ],
        })
    finally:
        db.close()


@router.post("/orders/{order_no}/close")
async def close_order(order_no: str, admin: dict = Depends(get_current_admin)):
    """关闭订单（仅待支付订单可关闭）。"""
    try:
        OrderService().close_order(order_no)
    except OrderNotFoundError:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})
    except OrderCreateError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "msg": "订单已关闭"})


# ── 系统设置 ────────────────────────────────────────────────


@router.get("/settings/gateway")
async def gateway_settings(admin: dict = Depends(get_current_admin)):
    """支付网关配置状态（不返回商户密钥）。"""
    return JSONResponse(content={"code": 1, "gateway": get_gateway_status()})


@router.put("/settings/gateway")
async def update_gateway_settings(body: GatewaySettingsRequest, admin: dict = Depends(get_current_admin)):
    try:
        save_gateway_settings(body.gateway_url, body.pid, body.key)
    except GatewayConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "msg": "网关配置已保存", "gateway": get_gateway_status()})


# ── 资源录入 ────────────────────────────────────────────────


@router.post("/resources")
async def create_resource(body: CreateResourceRequest, admin: dict = Depends(get_current_admin)):
    try:
        resource = ResourceService().create_resource(
            body.title, body.price, body.is_free, body.resource_url
        )
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={
        "code": 1,
        "resource": {
            "id": resource.id,
            "title": resource.title,
            "price": resource.price,
            "is_free": bool(resource.is_free),
            "resource_url": resource.resource_url,
        },
    })
