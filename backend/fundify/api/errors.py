"""
自定义异常模块

定义应用特定的异常类，用于统一的错误处理。
所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器。

错误分类：
- ValidationFailed: 请求格式或参数不合法（未触碰存储前就拒绝）
- Forbidden: 调用者不是目标记录的订阅者/创作者
- NotFound: 订阅或档位不存在
- Conflict: 当前状态下不允许的状态转换
- CapacityExceeded: 档位名额已满（可重试，提示用户选择其他档位）
- SignatureInvalid: Webhook 签名校验失败
- UpstreamError: Stripe API 调用失败
- TransientStoreFailure: 数据库暂时不可用（可重试）
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    - code: 业务错误码（用于前端区分不同错误）
    - message: 错误消息
    - status_code: HTTP 状态码

    使用示例：
        raise AppError(code=404101, message="Tier not found", status_code=404)
    """

    status_code_default = 400

    def __init__(self, *, code: int, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code if status_code is not None else self.status_code_default


class ValidationFailed(AppError):
    status_code_default = 400


class Forbidden(AppError):
    status_code_default = 403


class NotFound(AppError):
    status_code_default = 404


class Conflict(AppError):
    status_code_default = 409


class CapacityExceeded(AppError):
    status_code_default = 409


class SignatureInvalid(AppError):
    status_code_default = 400


class UpstreamError(AppError):
    status_code_default = 502


class TransientStoreFailure(AppError):
    status_code_default = 503


def tier_not_found() -> NotFound:
    return NotFound(code=404101, message="Membership tier not found")


def subscription_not_found() -> NotFound:
    return NotFound(code=404102, message="Subscription not found")


def user_not_found() -> NotFound:
    return NotFound(code=404001, message="User not found")


def tier_full() -> CapacityExceeded:
    """
    创建"档位已满"异常

    可重试：名额可能在之后释放，或用户可以选择其他档位。
    """
    return CapacityExceeded(
        code=409201,
        message="This tier is full. Please try another tier.",
    )


def tier_inactive() -> ValidationFailed:
    return ValidationFailed(code=400201, message="This tier is no longer available")


def already_subscribed() -> Conflict:
    return Conflict(code=409102, message="You already have a subscription to this creator")


def illegal_transition(current: str, action: str) -> Conflict:
    return Conflict(code=409101, message=f"Cannot {action} a subscription that is {current}")


def not_owner() -> Forbidden:
    return Forbidden(code=403101, message="Not authorized")


def store_unavailable() -> TransientStoreFailure:
    return TransientStoreFailure(
        code=503001, message="Storage temporarily unavailable, please retry"
    )
