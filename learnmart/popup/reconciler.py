"""
父窗口对账器：监听弹窗发来的 message 事件，按 type 分发到处理函数。

消息只是“该刷新了”的提示：处理函数重新请求服务端的积分余额和资源解锁状态，
不使用消息里的任何字段更新本地状态。
"""

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from learnmart.popup.errors import AccountRefreshError
from learnmart.popup.poller import PAYMENT_SUCCESS
from learnmart.popup.window import BrowserWindow, MessageEvent

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]


class OpenerReconciler:
    """按消息 type 注册处理函数的 message 监听器。"""

    def __init__(self, window: BrowserWindow):
        self.window = window
        self._handlers: dict[str, Handler] = {}
        self._tasks: set[asyncio.Task] = set()
        self._attached = False

    def register(self, message_type: str, handler: Handler) -> None:
        self._handlers[message_type] = handler

    def attach(self) -> None:
        if not self._attached:
            self.window.add_event_listener("message", self._on_message)
            self._attached = True

    def detach(self) -> None:
        if self._attached:
            self.window.remove_event_listener("message", self._on_message)
            self._attached = False

    def _on_message(self, event: MessageEvent) -> None:
        data = event.data
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            logger.debug("忽略无法识别的窗口消息: origin=%s", event.origin)
            return

        handler = self._handlers.get(data["type"])
        if handler is None:
            logger.debug("忽略未注册类型的窗口消息: type=%s", data["type"])
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("无法处理窗口消息(无事件循环): type=%s", data["type"])
            return

        task = loop.create_task(handler(data))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("窗口消息处理失败: %s", exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """等待所有已调度的处理函数执行完毕。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class AccountClient:
    """账户与资源解锁状态接口客户端，使用 Bearer 令牌认证。"""

    def __init__(
        self,
        base_url: str = "",
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _get(self, path: str) -> dict:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            resp = await self._client.get(self.base_url + path, headers=headers)
        except httpx.HTTPError as e:
            raise AccountRefreshError(f"请求 {path} 失败: {e}") from e
        if not resp.is_success:
            raise AccountRefreshError(f"{path} 返回 HTTP {resp.status_code}", resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise AccountRefreshError(f"{path} 响应不是有效的 JSON", resp.status_code) from e

    async def fetch_me(self) -> dict:
        return await self._get("/api/user/me")

    async def fetch_access(self, resource_id: int) -> dict:
        return await self._get(f"/api/resources/{resource_id}/access")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AccountView:
    """资源详情页依赖的本地视图：积分余额、会员类型、资源是否已解锁。"""

    def __init__(self, client: AccountClient, resource_id: int | None = None):
        self.client = client
        self.resource_id = resource_id
        self.coins: int | None = None
        self.membership_type: str | None = None
        self.unlocked = False
        self.resource_url: str | None = None
        self.refresh_count = 0
        self.last_error: str | None = None

    def bind(self, reconciler: OpenerReconciler) -> None:
        """收到 payment_success 消息时刷新本视图。"""
        reconciler.register(PAYMENT_SUCCESS, self.refresh)

    async def refresh(self, message: dict | None = None) -> None:
        """
        从服务端重新获取余额和解锁状态。

        message 仅作为触发信号，不读取其中字段。刷新失败时保留旧值并记录错误，
        用户可手动刷新页面。
        """
        try:
            me = await self.client.fetch_me()
            access = None
            if self.resource_id is not None:
                access = await self.client.fetch_access(self.resource_id)
        except AccountRefreshError as e:
            self.last_error = str(e)
            logger.warning("刷新账户视图失败: %s", e)
            return

        user = me.get("user", me)
        self.coins = user.get("coins")
        self.membership_type = user.get("membership_type")
        if access is not None:
            self.unlocked = bool(access.get("unlocked"))
            self.resource_url = access.get("resource_url") if self.unlocked else None
        self.last_error = None
        self.refresh_count += 1
        logger.info(
            "账户视图已刷新: coins=%s, resource_id=%s, unlocked=%s",
            self.coins, self.resource_id, self.unlocked,
        )
