"""
支付结果轮询器：运行在网关重定向后的弹窗中。

状态机：
    LOADING ──paid──────────────────────────→ SUCCESS
       │ 未支付 / 请求失败，剩余次数 > 0：等待 retry_delay 后重查
       ├─ 次数用尽且最后一次为“未支付” ─→ PENDING
       └─ 次数用尽且最后一次请求失败   ─→ ERROR
    URL 中无 out_trade_no             ─→ ERROR（不发请求）

PENDING / ERROR 下可 retry() 重新进入 LOADING，或 close()。
成功时只通过 postMessage 通知父窗口刷新，支付结果以服务端订单为准；
重定向 URL 上的 trade_status 等参数不参与判断。
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable
from urllib.parse import parse_qs, quote, urlsplit

import httpx

from learnmart.popup.errors import OrderStatusError
from learnmart.popup.window import BrowserWindow

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS = "payment_success"
STATUS_PATH = "/api/payment/order/{order_no}"


class PollState(str, Enum):
    LOADING = "loading"
    SUCCESS = "success"
    PENDING = "pending"
    ERROR = "error"


class ErrorKind(str, Enum):
    MISSING_ORDER_NUMBER = "missing_order_number"
    NETWORK_OR_SERVER = "network_or_server"
    STILL_PENDING = "still_pending"


STATE_MESSAGES = {
    PollState.LOADING: "正在查询订单状态...",
    PollState.SUCCESS: "支付成功，积分已到账",
    PollState.PENDING: "订单处理中，请稍后刷新查看",
}

ERROR_MESSAGES = {
    ErrorKind.MISSING_ORDER_NUMBER: "缺少订单号参数",
    ErrorKind.NETWORK_OR_SERVER: "获取订单状态失败，请稍后再试",
}


@dataclass
class PollerConfig:
    """轮询参数：最多查询 max_attempts 次，间隔 retry_delay 秒。"""
    max_attempts: int = 10
    retry_delay: float = 2.0
    close_delay: float = 2.0
    target_origin: str = "*"
    home_url: str = "/"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts 至少为 1")
        if self.retry_delay < 0 or self.close_delay < 0:
            raise ValueError("延迟时间不能为负数")

    @classmethod
    def from_env(cls) -> "PollerConfig":
        return cls(
            max_attempts=int(os.getenv("POLL_MAX_ATTEMPTS", "10")),
            retry_delay=float(os.getenv("POLL_RETRY_DELAY", "2.0")),
            close_delay=float(os.getenv("POLL_CLOSE_DELAY", "2.0")),
            target_origin=os.getenv("POLL_TARGET_ORIGIN", "*"),
        )


def parse_order_no(url: str) -> str | None:
    """从结果页 URL 中取出 out_trade_no，缺失或为空时返回 None。"""
    values = parse_qs(urlsplit(url).query).get("out_trade_no", [])
    for value in values:
        if value.strip():
            return value.strip()
    return None


class OrderStatusClient:
    """订单状态接口客户端（只读）。"""

    def __init__(
        self,
        base_url: str = "",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch(self, order_no: str) -> dict:
        """
        查询订单状态。

        Returns:
            {"order": {...}, "resource": {...} | None}

        Raises:
            OrderStatusError: 网络错误、非 2xx 响应或响应格式无效。
        """
        url = self.base_url + STATUS_PATH.format(order_no=quote(order_no, safe=""))
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as e:
            raise OrderStatusError(f"请求订单状态失败: {e}") from e

        if not resp.is_success:
            raise OrderStatusError(
                f"订单状态接口返回 HTTP {resp.status_code}", resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise OrderStatusError("订单状态响应不是有效的 JSON", resp.status_code) from e

        if not isinstance(data, dict) or not isinstance(data.get("order"), dict):
            raise OrderStatusError("订单状态响应格式无效", resp.status_code)
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ResultPoller:
    """支付结果弹窗的轮询状态机。"""

    def __init__(
        self,
        window: BrowserWindow,
        client: OrderStatusClient,
        config: PollerConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.window = window
        self.client = client
        self.config = config or PollerConfig()
        self._sleep = sleep

        self.state = PollState.LOADING
        self.error_kind: ErrorKind | None = None
        self.attempts = 0
        self.order_no: str | None = None
        self.order: dict | None = None
        self.resource: dict | None = None

    @property
    def message(self) -> str:
        """当前状态对应的用户提示文案。"""
        if self.state == PollState.ERROR:
            return ERROR_MESSAGES.get(self.error_kind, ERROR_MESSAGES[ErrorKind.NETWORK_OR_SERVER])
        return STATE_MESSAGES[self.state]

    @property
    def can_retry(self) -> bool:
        return self.state in (PollState.PENDING, PollState.ERROR)

    def _finish(self, state: PollState, error_kind: ErrorKind | None = None) -> PollState:
        self.state = state
        self.error_kind = error_kind
        logger.info(
            "支付结果轮询结束: order_no=%s, state=%s, attempts=%d",
            self.order_no, state.value, self.attempts,
        )
        return state

    async def run(self) -> PollState:
        """执行一轮轮询直到进入终态，返回终态。"""
        self.state = PollState.LOADING
        self.error_kind = None
        self.attempts = 0

        self.order_no = parse_order_no(self.window.location)
        if not self.order_no:
            logger.warning("结果页缺少 out_trade_no: url=%s", self.window.location)
            return self._finish(PollState.ERROR, ErrorKind.MISSING_ORDER_NUMBER)

        while True:
            if self.window.closed:
                logger.info("弹窗已关闭，停止轮询: order_no=%s", self.order_no)
                return self.state

            self.attempts += 1
            try:
                data = await self.client.fetch(self.order_no)
            except OrderStatusError as e:
                outcome = ErrorKind.NETWORK_OR_SERVER
                logger.warning(
                    "订单状态查询失败: order_no=%s, attempt=%d, error=%s",
                    self.order_no, self.attempts, e,
                )
            else:
                self.order = data["order"]
                self.resource = data.get("resource")
                if self.order.get("status") == "paid":
                    self._finish(PollState.SUCCESS)
                    await self._complete()
                    return self.state
                outcome = ErrorKind.STILL_PENDING

            if self.attempts >= self.config.max_attempts:
                if outcome == ErrorKind.STILL_PENDING:
                    return self._finish(PollState.PENDING, outcome)
                return self._finish(PollState.ERROR, outcome)

            await self._sleep(self.config.retry_delay)

    async def _complete(self) -> None:
        """通知父窗口，并在 close_delay 秒后关闭弹窗；没有父窗口时停留在成功页。"""
        opener = self.window.opener
        if opener is None:
            return

        self._notify_opener(opener)
        await self._sleep(self.config.close_delay)
        self.window.close()

    def _notify_opener(self, opener: BrowserWindow) -> None:
        message = {
            "type": PAYMENT_SUCCESS,
            "orderNo": self.order_no,
            "amount": (self.order or {}).get("amount"),
            "resourceId": (self.resource or {}).get("id"),
        }
        try:
            opener.post_message(message, self.config.target_origin, source=self.window)
        except Exception as e:
            # 父窗口可能已关闭或跨域受限，通知失败不影响弹窗
            logger.warning("通知父窗口失败: order_no=%s, error=%s", self.order_no, e)

    async def retry(self) -> PollState:
        """PENDING / ERROR 下手动重试：重置计数并重新轮询。"""
        if not self.can_retry:
            raise RuntimeError(f"当前状态不可重试: {self.state.value}")
        return await self.run()

    def close(self) -> None:
        """有父窗口时关闭弹窗，否则跳转到首页。"""
        if self.window.opener is not None:
            self.window.close()
        else:
            self.window.navigate(self.config.home_url)
