"""支付弹窗流程的异常类型。"""


class PaymentFlowError(Exception):
    """支付弹窗流程异常基类。"""
    pass


class PopupBlockedError(PaymentFlowError):
    """浏览器拦截了支付弹窗，需要用户允许弹出窗口。"""

    def __init__(self, msg: str = "支付窗口被浏览器拦截，请允许本站弹出窗口后重试"):
        super().__init__(msg)


class WindowClosedError(PaymentFlowError):
    """目标窗口已关闭，无法投递消息。"""
    pass


class OrderStatusError(PaymentFlowError):
    """订单状态查询失败（网络错误、非 2xx 响应或响应格式无效）。"""

    def __init__(self, msg: str, status_code: int | None = None):
        super().__init__(msg)
        self.status_code = status_code


class AccountRefreshError(PaymentFlowError):
    """刷新账户余额或资源解锁状态失败。"""

    def __init__(self, msg: str, status_code: int | None = None):
        super().__init__(msg)
        self.status_code = status_code
