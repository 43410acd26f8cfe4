"""
API 路由聚合模块

- tiers: 会员档位管理
- subscriptions: 结账、订阅查询与取消/暂停/恢复
- stripe: Webhook、客户门户、公开配置
- utils: 健康检查
"""
from fastapi import APIRouter

from fundify.api.routes import stripe, subscriptions, tiers, utils

api_router = APIRouter()

api_router.include_router(tiers.router)  # /tiers/*
api_router.include_router(subscriptions.router)  # /subscriptions/*
api_router.include_router(stripe.router)  # /stripe/*
api_router.include_router(utils.router)  # /utils/*
