"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

# 订单状态：仅允许 pending → paid 或 pending → failed
ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"

ORDER_STATUSES = (ORDER_PENDING, ORDER_PAID, ORDER_FAILED)


@dataclass
class Resource:
    id: int
    title: str
    price: int = 0  # 积分
    is_free: int = 0
    resource_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Order:
    id: int
    order_no: str
    user_id: int
    amount: Decimal
    coins: int
    resource_id: Optional[int] = None
    status: str = ORDER_PENDING
    payment_method: str = "alipay"
    api_trade_no: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Order":
        return cls(
            id=row["id"],
            order_no=row["order_no"],
            user_id=row["user_id"],
            amount=Decimal(str(row["amount"])).quantize(Decimal("0.01")),
            coins=row["coins"],
            resource_id=row["resource_id"],
            status=row["status"],
            payment_method=row["payment_method"],
            api_trade_no=row["api_trade_no"],
            created_at=row["created_at"],
            paid_at=row["paid_at"],
            closed_at=row["closed_at"],
        )
