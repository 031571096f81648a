"""
用户账号路由：注册、登录、登出、个人信息（积分余额）、购买记录。
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from learnmart.services.auth import (
    JWT_EXPIRE_HOURS,
    authenticate_user,
    get_current_user,
    register_user,
)
from learnmart.services.purchase_service import PurchaseService, membership_valid

router = APIRouter(prefix="/api")


class CredentialsRequest(BaseModel):
    email: str
    password: str


@router.post("/auth/register")
async def register(body: CredentialsRequest):
    try:
        user = register_user(body.email, body.password)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "user": user})


@router.post("/auth/login")
async def login(body: CredentialsRequest):
    """用户登录：返回 JWT，同时写入 token cookie。"""
    try:
        result = authenticate_user(body.email, body.password)
    except ValueError as e:
        return JSONResponse(status_code=401, content={"code": -1, "msg": str(e)})

    resp = JSONResponse(content=result)
    resp.set_cookie(
        "token",
        result["token"],
        max_age=JWT_EXPIRE_HOURS * 3600,
        httponly=True,
        samesite="lax",
    )
    return resp


@router.post("/auth/logout")
async def logout():
    resp = JSONResponse(content={"code": 1})
    resp.delete_cookie("token")
    return resp


@router.get("/user/me")
async def me(user: dict = Depends(get_current_user)):
    """当前用户信息，积分余额以数据库为准。"""
    return JSONResponse(content={
        "code": 1,
        "user": {
            "id": user["id"],
            "email": user["email"],
            "coins": user["coins"] or 0,
            "membership_type": user["membership_type"],
            "membership_expire_time": user["membership_expire_time"],
            "membership_valid": membership_valid(user),
        },
    })


@router.get("/user/purchases")
async def purchases(user: dict = Depends(get_current_user)):
    return JSONResponse(content={
        "code": 1,
        "purchases": PurchaseService().list_purchases(user["id"]),
    })
