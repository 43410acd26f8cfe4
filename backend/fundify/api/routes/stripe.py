"""
Stripe 路由模块

- POST /stripe/webhook          Stripe 事件回调（签名校验 + 去重 + 状态协调）
- POST /stripe/portal-session   客户门户（管理支付方式、发票）
- GET  /stripe/config           前端所需的公开配置
"""
from __future__ import annotations

from fastapi import APIRouter, Header, Request
from starlette.concurrency import run_in_threadpool

from fundify.api.deps import CurrentUser, SessionDep
from fundify.api.errors import SignatureInvalid, ValidationFailed
from fundify.api.schemas import (
    ApiEnvelope,
    PortalSessionData,
    PortalSessionRequest,
    StripeConfigData,
    WebhookAckData,
)
from fundify.core.config import settings
from fundify.services.event_gateway import EventGateway
from fundify.services.stripe_service import get_stripe_service

router = APIRouter(prefix="/stripe", tags=["stripe"])

gateway = EventGateway()


@router.post("/webhook", response_model=ApiEnvelope)
async def webhook(
    request: Request,
    session: SessionDep,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> ApiEnvelope:
    """
    Stripe Webhook

    签名必须基于原始请求体校验，因此这里不使用 pydantic 解析请求体。
    - 签名无效：400，Stripe 会重投（密钥轮换期间可恢复）
    - 签名有效但内容无法解析：200 确认，不再重投
    - 数据库不可用：503，由 Stripe 重投
    """
    payload = await request.body()
    result = await run_in_threadpool(gateway.receive, session, payload, stripe_signature)
    if result.reason == "signature_invalid":
        raise SignatureInvalid(code=400300, message="Invalid webhook signature")
    return ApiEnvelope(
        data=WebhookAckData(
            received=result.accepted,
            event_id=result.event_id,
            outcome=result.outcome.value if result.outcome else None,
            duplicate=result.duplicate,
            rejected=result.reason,
        )
    )


@router.post("/portal-session", response_model=ApiEnvelope)
def portal_session(
    current_user: CurrentUser, body: PortalSessionRequest | None = None
) -> ApiEnvelope:
    if not current_user.stripe_customer_id:
        raise ValidationFailed(code=400205, message="No billing account yet, subscribe first")
    return_url = (body.return_url if body else None) or (
        f"{settings.FRONTEND_URL.rstrip('/')}/subscriptions"
    )
    url = get_stripe_service().create_portal_session(
        customer_id=current_user.stripe_customer_id, return_url=return_url
    )
    return ApiEnvelope(data=PortalSessionData(url=url))


@router.get("/config", response_model=ApiEnvelope)
def stripe_config() -> ApiEnvelope:
    return ApiEnvelope(
        data=StripeConfigData(
            publishable_key=settings.STRIPE_PUBLISHABLE_KEY,
            currency=settings.STRIPE_CURRENCY,
        )
    )
