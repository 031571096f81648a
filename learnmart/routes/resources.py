"""
资源路由：资源详情、解锁状态、积分购买。
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from learnmart.services.auth import get_current_user, get_optional_user
from learnmart.services.purchase_service import (
    PurchaseError,
    PurchaseService,
    ResourceService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/resources")


def _public_resource(resource: dict) -> dict:
    """资源公开字段（不含 resource_url）。"""
    return {
        "id": resource["id"],
        "title": resource["title"],
        "price": resource["price"] or 0,
        "is_free": bool(resource["is_free"]),
    }


@router.get("/{resource_id}")
async def resource_detail(resource_id: int, request: Request):
    """资源详情；已登录时附带 purchased 标记。"""
    resource = ResourceService().get_resource(resource_id)
    if not resource:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "资源不存在"})

    data = _public_resource(resource)
    user = get_optional_user(request)
    data["purchased"] = bool(user) and PurchaseService().has_purchased(user["id"], resource_id)
    return JSONResponse(content={"code": 1, "resource": data})


@router.get("/{resource_id}/access")
async def resource_access(resource_id: int, user: dict = Depends(get_current_user)):
    """当前用户对资源的解锁状态，解锁后返回 resource_url。"""
    resource = ResourceService().get_resource(resource_id)
    if not resource:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "资源不存在"})

    unlocked = PurchaseService().has_purchased(user["id"], resource_id)
    return JSONResponse(content={
        "code": 1,
        "resource_id": resource_id,
        "unlocked": unlocked,
        "resource_url": resource["resource_url"] if unlocked else None,
    })


@router.post("/{resource_id}/purchase")
async def purchase_resource(resource_id: int, user: dict = Depends(get_current_user)):
    """积分购买资源；已购买过时直接返回资源链接。"""
    try:
        result = PurchaseService().purchase(user["id"], resource_id)
    except PurchaseError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"code": -1, "success": False, "msg": str(e), **e.extra},
        )

    result.pop("charged", None)
    return JSONResponse(content={"code": 1, **result})
