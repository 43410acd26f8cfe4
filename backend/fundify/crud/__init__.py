"""CRUD 操作模块"""
from .subscription import (
    delete_abandoned_pending,
    find_access_grant,
    find_open_for_pair,
    has_access,
    list_active_for_creator,
    list_failed_checkouts,
    list_for_subscriber,
    monthly_revenue,
)
from .subscription import get as get_subscription
from .tier import create as create_tier
from .tier import delete_or_deactivate as delete_or_deactivate_tier
from .tier import get as get_tier
from .tier import get_owned as get_owned_tier
from .tier import list_creator_tiers
from .tier import update as update_tier
from .user import get as get_user
from .user import set_stripe_customer_id

__all__ = [
    "create_tier",
    "delete_abandoned_pending",
    "delete_or_deactivate_tier",
    "find_access_grant",
    "find_open_for_pair",
    "get_owned_tier",
    "get_subscription",
    "get_tier",
    "get_user",
    "has_access",
    "list_active_for_creator",
    "list_creator_tiers",
    "list_failed_checkouts",
    "list_for_subscriber",
    "monthly_revenue",
    "set_stripe_customer_id",
    "update_tier",
]
