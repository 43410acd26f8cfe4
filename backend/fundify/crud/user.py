"""用户 CRUD 操作"""
from sqlmodel import Session

from fundify.api.errors import user_not_found
from fundify.models import User, utc_now


def get(*, session: Session, user_id: int) -> User | None:
    return session.get(User, user_id)


def set_stripe_customer_id(*, session: Session, user_id: int, customer_id: str) -> User:
    """记录 Stripe 客户 ID（不提交，由调用方统一提交）"""
    user = session.get(User, user_id)
    if not user:
        raise user_not_found()
    user.stripe_customer_id = customer_id
    user.updated_at = utc_now()
    session.add(user)
    return user
