"""
浏览器窗口模型：弹窗打开、按名称复用、跨窗口 postMessage 和事件监听。

支付流程的三个部件（弹窗启动器、结果轮询器、父窗口对账器）都只依赖这里的
BrowserWindow 接口，测试中直接用它模拟 opener/popup 两个窗口。
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlsplit

from learnmart.popup.errors import WindowClosedError

logger = logging.getLogger(__name__)

Listener = Callable[["MessageEvent"], None]


@dataclass
class Viewport:
    """窗口在屏幕上的位置和外部尺寸（对应 screenX/screenY/outerWidth/outerHeight）。"""
    screen_x: int = 0
    screen_y: int = 0
    outer_width: int = 1280
    outer_height: int = 800


@dataclass
class MessageEvent:
    data: Any
    origin: str
    source: "BrowserWindow | None" = None


@dataclass
class SubmittedForm:
    action: str
    method: str
    fields: dict


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return "null"
    return f"{parts.scheme}://{parts.netloc}"


class BrowserWindow:
    """单个浏览器窗口。"""

    def __init__(
        self,
        location: str = "about:blank",
        name: str = "",
        opener: "BrowserWindow | None" = None,
        viewport: Viewport | None = None,
        popups_blocked: bool = False,
    ):
        self.location = location
        self.name = name
        self.opener = opener
        self.viewport = viewport or Viewport()
        self.popups_blocked = popups_blocked
        self.closed = False
        self.features = ""
        self.document = ""
        self.submitted_forms: list[SubmittedForm] = []
        self._listeners: dict[str, list[Listener]] = {}
        self._children: dict[str, BrowserWindow] = {}

    @property
    def origin(self) -> str:
        return _origin_of(self.location)

    # ── 窗口操作 ──────────────────────────────────────────

    def open(self, url: str = "", name: str = "", features: str = "") -> "BrowserWindow | None":
        """
        打开（或按名称复用）子窗口，对应 window.open。

        被拦截时返回 None。
        """
        if self.popups_blocked:
            logger.info("弹窗被拦截: name=%s", name)
            return None

        child = self._children.get(name) if name else None
        if child is None or child.closed:
            child = BrowserWindow(name=name, opener=self)
            if name:
                self._children[name] = child
        child.features = features
        child.location = url or "about:blank"
        return child

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            logger.debug("窗口已关闭: name=%s", self.name)

    def navigate(self, url: str) -> None:
        if self.closed:
            raise WindowClosedError("窗口已关闭")
        self.location = url

    def write_document(self, html: str) -> None:
        if self.closed:
            raise WindowClosedError("窗口已关闭")
        self.document = html

    def submit_form(self, action: str, fields: dict, method: str = "post") -> None:
        """提交表单并导航到 action。"""
        if self.closed:
            raise WindowClosedError("窗口已关闭")
        self.submitted_forms.append(SubmittedForm(action, method, dict(fields)))
        self.location = action

    # ── 消息与事件 ────────────────────────────────────────

    def add_event_listener(self, event_type: str, listener: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(listener)

    def remove_event_listener(self, event_type: str, listener: Listener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def dispatch_event(self, event_type: str, event: MessageEvent) -> None:
        for listener in list(self._listeners.get(event_type, [])):
            listener(event)

    def post_message(
        self,
        data: Any,
        target_origin: str = "*",
        source: "BrowserWindow | None" = None,
    ) -> None:
        """
        向本窗口投递 message 事件。

        数据按结构化克隆的语义深拷贝；target_origin 与本窗口 origin 不符时静默丢弃。

        Raises:
            WindowClosedError: 本窗口已关闭。
        """
        if self.closed:
            raise WindowClosedError("目标窗口已关闭")
        if target_origin != "*" and target_origin != self.origin:
            logger.debug(
                "postMessage 目标源不匹配，已丢弃: target=%s, actual=%s",
                target_origin, self.origin,
            )
            return
        origin = source.origin if source is not None else "null"
        self.dispatch_event("message", MessageEvent(copy.deepcopy(data), origin, source))
