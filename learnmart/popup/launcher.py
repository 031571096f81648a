"""
支付弹窗启动器：在当前页面上方居中打开弹窗，并在弹窗内提交网关支付表单。

主页面不跳转；网关收银台在弹窗中完成支付后重定向到结果页。
"""

import html
import logging
from dataclasses import dataclass

from learnmart.popup.errors import PopupBlockedError
from learnmart.popup.window import BrowserWindow, Viewport

logger = logging.getLogger(__name__)

POPUP_WIDTH = 800
POPUP_HEIGHT = 600
POPUP_NAME = "payment_popup"


@dataclass
class PaymentDescriptor:
    """服务端返回的支付参数：网关地址 + 需原样提交的表单字段。"""
    payment_url: str
    payment_params: dict

    @classmethod
    def from_response(cls, data: dict) -> "PaymentDescriptor":
        """
        从下单接口响应构建。

        Raises:
            ValueError: 缺少 payment_url 或 payment_params 不是字典。
        """
        url = data.get("payment_url")
        params = data.get("payment_params")
        if not isinstance(url, str) or not url:
            raise ValueError("支付参数缺少 payment_url")
        if not isinstance(params, dict):
            raise ValueError("payment_params 格式无效")
        return cls(payment_url=url, payment_params=params)


@dataclass
class PopupGeometry:
    width: int
    height: int
    left: int
    top: int

    def features(self) -> str:
        return (
            f"width={self.width},height={self.height},"
            f"left={self.left},top={self.top},scrollbars=yes,resizable=yes"
        )


def compute_popup_geometry(
    viewport: Viewport,
    width: int = POPUP_WIDTH,
    height: int = POPUP_HEIGHT,
) -> PopupGeometry:
    """计算居中于当前窗口的弹窗位置，不超出屏幕左上角。"""
    left = viewport.screen_x + (viewport.outer_width - width) // 2
    top = viewport.screen_y + (viewport.outer_height - height) // 2
    return PopupGeometry(width=width, height=height, left=max(left, 0), top=max(top, 0))


def build_payment_form(descriptor: PaymentDescriptor, form_id: str = "payment_form") -> str:
    """生成自动提交的隐藏表单 HTML，每个字段一个 hidden input。"""
    inputs = "\n".join(
        f'    <input type="hidden" name="{html.escape(str(name), quote=True)}" '
        f'value="{html.escape(str(value), quote=True)}">'
        for name, value in descriptor.payment_params.items()
    )
    action = html.escape(descriptor.payment_url, quote=True)
    return (
        "<!DOCTYPE html>\n"
        '<html><head><meta charset="utf-8"><title>正在跳转支付...</title></head>\n'
        "<body>\n"
        f'  <form id="{form_id}" method="post" action="{action}" style="display:none">\n'
        f"{inputs}\n"
        "  </form>\n"
        f'  <script>document.getElementById("{form_id}").submit();</script>\n'
        "</body></html>\n"
    )


class PopupLauncher:
    """在宿主窗口上打开支付弹窗并提交支付表单。"""

    def __init__(
        self,
        host: BrowserWindow,
        width: int = POPUP_WIDTH,
        height: int = POPUP_HEIGHT,
        window_name: str = POPUP_NAME,
    ):
        self.host = host
        self.width = width
        self.height = height
        self.window_name = window_name

    def launch(self, descriptor: PaymentDescriptor) -> BrowserWindow:
        """
        打开弹窗并提交支付表单。

        Returns:
            弹窗窗口对象。

        Raises:
            PopupBlockedError: 弹窗被浏览器拦截，此时不提交任何表单。
        """
        geometry = compute_popup_geometry(self.host.viewport, self.width, self.height)
        popup = self.host.open("", self.window_name, geometry.features())
        if popup is None:
            raise PopupBlockedError()

        popup.write_document(build_payment_form(descriptor))
        popup.submit_form(descriptor.payment_url, descriptor.payment_params, method="post")
        logger.info(
            "支付弹窗已打开: out_trade_no=%s",
            descriptor.payment_params.get("out_trade_no"),
        )
        return popup
