"""
Stripe 支付服务封装

文档: https://docs.stripe.com/api
Webhook 签名: https://docs.stripe.com/webhooks#verify-events

本服务只使用 Stripe 的以下能力：
- 创建客户、结账会话、客户门户会话
- 取消确认失败的结账留下的订阅
- 校验 Webhook 签名
其余（扣款、重试、发票）由 Stripe 负责，通过事件通知本服务。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fundify.api.errors import SignatureInvalid, UpstreamError
from fundify.core.config import settings
from fundify.enums import BillingInterval

logger = logging.getLogger(__name__)

_STRIPE_INTERVALS = {
    BillingInterval.monthly: "month",
    BillingInterval.yearly: "year",
}


def to_minor_units(amount: Decimal) -> int:
    """金额转换为 Stripe 的最小货币单位（美元 -> 美分）"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str | None
    expires_at: datetime | None


def _retrying(max_attempts: int):
    # 仅网络层错误重试；卡片、参数等业务错误直接抛出
    return retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.5, max=4),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


class StripeService:
    """Stripe 服务封装"""

    def __init__(
        self,
        api_key: str | None,
        webhook_secret: str | None,
        *,
        tolerance_seconds: int = 300,
        max_attempts: int = 3,
    ):
        """
        初始化 Stripe 服务

        Args:
            api_key: Stripe Secret Key
            webhook_secret: Webhook 签名密钥
            tolerance_seconds: 签名时间戳容忍窗口（防重放）
            max_attempts: 网络错误时的最大尝试次数
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.max_attempts = max_attempts
        logger.info("Stripe service initialized")

    def verify_signature(self, payload: str, signature: str | None) -> None:
        """
        校验 Webhook 签名（Stripe-Signature 头部）

        在解析请求体之前调用，未通过校验的内容不会被反序列化。

        Raises:
            SignatureInvalid: 未配置密钥、缺少签名头或签名不匹配
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured, rejecting webhook")
            raise SignatureInvalid(code=400301, message="Webhook secret not configured")
        if not signature:
            raise SignatureInvalid(code=400302, message="Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(code=400303, message="Invalid webhook signature") from e

    def _call(self, operation: str, fn, *args: Any, **params: Any) -> Any:
        if not self.api_key:
            raise UpstreamError(code=502002, message="Payments are not configured")
        try:
            return _retrying(self.max_attempts)(fn)(*args, api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise UpstreamError(code=502001, message="Payment provider error") from e

    def create_customer(self, *, user_id: int, email: str, name: str | None) -> str:
        """
        创建 Stripe 客户

        Returns:
            Stripe 客户 ID（cus_...）
        """
        customer = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"user_id": str(user_id)},
        )
        return customer["id"]

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        subscription_id: int,
        subscriber_id: int,
        creator_id: int,
        tier_id: int,
        tier_name: str,
        tier_description: str | None,
        price: Decimal,
        interval: BillingInterval | str,
        expires_at: datetime,
    ) -> CheckoutSession:
        """
        创建订阅模式的结账会话

        metadata 同时写到会话和 Stripe 订阅上，Webhook 据此关联本地订阅记录。
        """
        metadata = {
            "subscription_id": str(subscription_id),
            "subscriber_id": str(subscriber_id),
            "creator_id": str(creator_id),
            "tier_id": str(tier_id),
        }
        product_data: dict[str, Any] = {"name": tier_name, "metadata": {"tier_id": str(tier_id)}}
        if tier_description:
            product_data["description"] = tier_description

        session = self._call(
            "checkout.session.create",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            client_reference_id=str(subscription_id),
            line_items=[
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": settings.STRIPE_CURRENCY,
                        "unit_amount": to_minor_units(price),
                        "recurring": {"interval": _STRIPE_INTERVALS[BillingInterval(interval)]},
                        "product_data": product_data,
                    },
                }
            ],
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
            expires_at=int(expires_at.timestamp()),
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        stripe_expires = session.get("expires_at")
        return CheckoutSession(
            session_id=session["id"],
            url=session.get("url"),
            expires_at=(
                datetime.fromtimestamp(stripe_expires, tz=timezone.utc)
                if stripe_expires
                else expires_at
            ),
        )

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        """创建客户门户会话，返回跳转 URL"""
        session = self._call(
            "billing_portal.session.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session["url"]

    def cancel_subscription(self, stripe_subscription_id: str) -> None:
        """
        立即取消 Stripe 订阅（不按比例退款）

        订阅已不存在或已取消时视为成功。
        """
        try:
            self._call(
                "subscription.cancel", stripe.Subscription.cancel, stripe_subscription_id
            )
        except UpstreamError as e:
            if isinstance(e.__cause__, stripe.InvalidRequestError):
                logger.warning(
                    f"Stripe subscription {stripe_subscription_id} not cancellable: {e.__cause__}"
                )
                return
            raise
        logger.info(f"Stripe subscription {stripe_subscription_id} cancelled")


# 全局 Stripe 服务实例
_stripe_service: StripeService | None = None


def init_stripe_service(
    api_key: str | None, webhook_secret: str | None, **kwargs: Any
) -> StripeService:
    """初始化全局 Stripe 服务"""
    global _stripe_service
    _stripe_service = StripeService(api_key=api_key, webhook_secret=webhook_secret, **kwargs)
    return _stripe_service


def get_stripe_service() -> StripeService:
    """
    获取全局 Stripe 服务实例

    首次调用时从配置初始化。
    """
    if _stripe_service is None:
        return init_stripe_service(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            max_attempts=settings.STRIPE_API_MAX_ATTEMPTS,
        )
    return _stripe_service
