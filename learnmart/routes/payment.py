"""
支付路由：

- POST /api/payment/create            创建充值订单，返回网关支付参数
- GET  /api/payment/order/{order_no}  订单状态查询（公开、只读，供结果弹窗轮询）
- GET  /api/payment/form/{order_no}   自动提交的网关支付表单页
- GET|POST /api/payment/notify        网关异步通知
- GET  /payment/result                网关跳转回的结果页（弹窗内轮询）
"""

import html
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel

from learnmart.models.schemas import ORDER_PENDING
from learnmart.popup.launcher import PaymentDescriptor, build_payment_form
from learnmart.popup.poller import (
    ERROR_MESSAGES,
    PAYMENT_SUCCESS,
    STATE_MESSAGES,
    ErrorKind,
    PollerConfig,
    PollState,
)
from learnmart.services.auth import get_current_user
from learnmart.services.gateway_config import GatewayConfigError, get_gateway_settings
from learnmart.services.notify_service import NotifyService
from learnmart.services.order_service import (
    OrderCreateError,
    OrderNotFoundError,
    OrderService,
    RESULT_PATH,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment")


class CreatePaymentRequest(BaseModel):
    resource_id: int | None = None
    amount: str | int | float | None = None
    type: str = "alipay"


@router.post("/create")
async def create_payment(body: CreatePaymentRequest, user: dict = Depends(get_current_user)):
    """
    创建充值订单。

    流程：检查网关配置 → 创建待支付订单 → 生成签名后的支付参数
    """
    if not get_gateway_settings():
        return JSONResponse(status_code=503, content={"code": -1, "msg": "支付网关尚未配置"})

    svc = OrderService()
    try:
        order = svc.create_order(
            user_id=user["id"],
            resource_id=body.resource_id,
            amount=body.amount,
            payment_method=body.type,
        )
        descriptor = svc.build_payment_descriptor(order)
    except OrderCreateError as e:
        return JSONResponse(status_code=e.status_code, content={"code": -1, "msg": str(e)})
    except GatewayConfigError as e:
        return JSONResponse(status_code=503, content={"code": -1, "msg": str(e)})

    return JSONResponse(content={
        "code": 1,
        "order_no": order.order_no,
        "amount": f"{order.amount:.2f}",
        "coins": order.coins,
        "payment_url": descriptor["payment_url"],
        "payment_params": descriptor["payment_params"],
    })


@router.get("/order/{order_no}")
async def get_order_status(order_no: str):
    """
    订单状态轮询接口（公开，无需认证，只读）。

    status 为 "paid" 是唯一的成功信号。
    """
    try:
        data = OrderService().get_order_status(order_no)
    except OrderNotFoundError:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})

    return JSONResponse(content={"code": 1, "success": True, **data})


@router.get("/form/{order_no}")
async def payment_form(order_no: str):
    """返回自动提交到网关的支付表单页，仅限待支付订单。"""
    svc = OrderService()
    order = svc.get_order(order_no)
    if not order:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})
    if order.status != ORDER_PENDING:
        return JSONResponse(status_code=409, content={"code": -1, "msg": "订单已结束，无法继续支付"})

    try:
        descriptor = PaymentDescriptor.from_response(svc.build_payment_descriptor(order))
    except GatewayConfigError as e:
        return JSONResponse(status_code=503, content={"code": -1, "msg": str(e)})

    return HTMLResponse(content=build_payment_form(descriptor))


@router.api_route("/notify", methods=["GET", "POST"])
async def payment_notify(request: Request):
    """
    网关异步通知。

    处理成功（含重复通知）回复纯文本 "success"，否则回复 "fail" 让网关重试。
    """
    params = dict(request.query_params)
    if request.method == "POST":
        form_data = await request.form()
        params.update({k: v for k, v in form_data.items() if isinstance(v, str)})

    logger.info(
        "收到支付通知: out_trade_no=%s, trade_status=%s",
        params.get("out_trade_no"), params.get("trade_status"),
    )
    handled = NotifyService().handle_notify(params)
    return PlainTextResponse("success" if handled else "fail")


# 网关同步跳转（return_url）落地的结果页，由弹窗内脚本轮询订单状态
pages = APIRouter()

_RESULT_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>支付结果</title></head>
<body>
<p id="state">{loading}</p>
<script>
(function () {{
  var orderNo = {order_no};
  var cfg = {config};
  var state = document.getElementById("state");
  if (!orderNo) {{ state.textContent = {missing}; return; }}
  var attempts = 0;
  function check() {{
    attempts += 1;
    fetch("/api/payment/order/" + encodeURIComponent(orderNo))
      .then(function (r) {{ return r.ok ? r.json() : null; }})
      .then(function (data) {{
        var order = data && data.order;
        if (order && order.status === "paid") {{
          state.textContent = {success};
          if (window.opener && !window.opener.closed) {{
            window.opener.postMessage({{
              type: {message_type}, orderNo: orderNo, amount: order.amount,
              resourceId: data.resource ? data.resource.id : null
            }}, cfg.target_origin);
          }}
          setTimeout(function () {{ window.close(); }}, cfg.close_delay * 1000);
        }} else if (attempts < cfg.max_attempts) {{
          setTimeout(check, cfg.retry_delay * 1000);
        }} else {{
          state.textContent = order ? {pending} : {failed};
        }}
      }})
      .catch(function () {{
        if (attempts < cfg.max_attempts) {{ setTimeout(check, cfg.retry_delay * 1000); }}
        else {{ state.textContent = {failed}; }}
      }});
  }}
  check();
}})();
</script>
</body></html>
"""


def build_result_page(order_no: str | None, config: PollerConfig) -> str:
    """渲染结果页；订单号与轮询参数以 JSON 字面量嵌入脚本。"""
    def js(value) -> str:
        return (
            json.dumps(value, ensure_ascii=False)
            .replace("&", "\\u0026").replace("<", "\\u003c").replace(">", "\\u003e")
        )

    return _RESULT_PAGE.format(
        loading=html.escape(STATE_MESSAGES[PollState.LOADING]),
        order_no=js(order_no or ""),
        config=js({
            "max_attempts": config.max_attempts,
            "retry_delay": config.retry_delay,
            "close_delay": config.close_delay,
            "target_origin": config.target_origin,
        }),
        message_type=js(PAYMENT_SUCCESS),
        success=js(STATE_MESSAGES[PollState.SUCCESS]),
        pending=js(STATE_MESSAGES[PollState.PENDING]),
        missing=js(ERROR_MESSAGES[ErrorKind.MISSING_ORDER_NUMBER]),
        failed=js(ERROR_MESSAGES[ErrorKind.NETWORK_OR_SERVER]),
    )


@pages.get(RESULT_PATH)
async def payment_result_page(out_trade_no: str | None = None):
    """支付结果页（弹窗内），轮询订单状态并通知父窗口。"""
    return HTMLResponse(content=build_result_page(out_trade_no, PollerConfig.from_env()))
