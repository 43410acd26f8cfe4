"""
Stripe Webhook 事件接入

receive() 的处理顺序：
1. 校验签名（未通过则不解析请求体）
2. 解析 JSON，取事件 ID 和类型
3. 在同一事务里检查去重、写入事件记录并执行业务处理；重复事件直接短路
4. 业务错误：回滚业务事务，另起事务记录 failed 结果（以及失败处理，
   如把"档位已满"写到订阅上）后确认事件，避免 Stripe 对永久失败的事件无限重投
5. 数据库不可用：不记录、抛出 TransientStoreFailure，由 Stripe 重投

网关本身不持有业务状态。
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from fundify.api.errors import AppError, Conflict, SignatureInvalid, TransientStoreFailure
from fundify.core.db import unit_of_work
from fundify.enums import EventOutcome, StripeEventType
from fundify.models import ProcessedEvent, utc_now
from fundify.services.reconciler import (
    EVENT_HANDLERS,
    FAILURE_HANDLERS,
    EventHandler,
    FailureHandler,
)
from fundify.services.stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)


class _DuplicateEvent(Exception):
    pass


@dataclass(frozen=True)
class GatewayResult:
    """
    网关处理结果

    - accepted: 是否确认（True 时 Stripe 不再重投）
    - reason: 拒绝原因（signature_invalid / malformed_payload）
    - event_id / event_type: 事件信息（解析成功时）
    - outcome: 业务处理结果
    - duplicate: 是否为重复投递
    """
    accepted: bool
    reason: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    outcome: EventOutcome | None = None
    duplicate: bool = False

    @classmethod
    def rejected(cls, reason: str) -> GatewayResult:
        return cls(accepted=False, reason=reason)


class EventGateway:
    def __init__(
        self,
        stripe_service: StripeService | None = None,
        handlers: dict[StripeEventType, EventHandler] | None = None,
        failure_handlers: dict[StripeEventType, FailureHandler] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._stripe_service = stripe_service
        self.handlers = handlers if handlers is not None else EVENT_HANDLERS
        self.failure_handlers = (
            failure_handlers if failure_handlers is not None else FAILURE_HANDLERS
        )
        self.clock = clock

    @property
    def stripe_service(self) -> StripeService:
        return self._stripe_service or get_stripe_service()

    def receive(self, session: Session, raw_payload: bytes, signature: str | None) -> GatewayResult:
        try:
            payload_text = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Rejected webhook: payload is not valid UTF-8")
            return GatewayResult.rejected("malformed_payload")

        try:
            self.stripe_service.verify_signature(payload_text, signature)
        except SignatureInvalid as e:
            logger.warning(f"Rejected webhook: {e.message}")
            return GatewayResult.rejected("signature_invalid")

        event = self._parse(payload_text)
        if event is None:
            return GatewayResult.rejected("malformed_payload")

        event_id, event_type, obj, payload = event
        try:
            return self._dispatch(session, event_id, event_type, obj, payload)
        except TransientStoreFailure:
            logger.error(f"Event {event_id} ({event_type}) not processed, store unavailable")
            raise

    @staticmethod
    def _parse(payload_text: str) -> tuple[str, str, dict[str, Any], dict[str, Any]] | None:
        try:
            event = json.loads(payload_text)
        except ValueError:
            logger.error("Signed webhook payload is not valid JSON")
            return None
        if not isinstance(event, dict):
            logger.error("Signed webhook payload is not a JSON object")
            return None
        event_id = event.get("id")
        event_type = event.get("type")
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not event_id or not event_type or not isinstance(obj, dict):
            logger.error(f"Signed webhook missing id/type/data.object (id={event_id!r})")
            return None
        return str(event_id), str(event_type), obj, event

    @staticmethod
    def _already_processed(session: Session, event_id: str) -> bool:
        stmt = select(ProcessedEvent.id).where(ProcessedEvent.event_id == event_id)
        return session.exec(stmt).first() is not None

    def _dispatch(
        self,
        session: Session,
        event_id: str,
        event_type: str,
        obj: dict[str, Any],
        payload: dict[str, Any],
    ) -> GatewayResult:
        try:
            kind: StripeEventType | None = StripeEventType(event_type)
        except ValueError:
            kind = None
        handler = self.handlers.get(kind) if kind is not None else None

        record = ProcessedEvent(
            event_id=event_id,
            event_type=event_type,
            object_id=_object_id(obj),
            outcome=EventOutcome.ignored,
            payload=payload,
        )
        try:
            with unit_of_work(session):
                if self._already_processed(session, event_id):
                    raise _DuplicateEvent
                session.add(record)
                try:
                    session.flush()
                except IntegrityError as e:
                    # 并发投递：另一个请求已先写入同一事件 ID
                    raise _DuplicateEvent from e
                if handler is not None:
                    record.outcome = handler(session, obj, self.clock())
                    session.add(record)
        except _DuplicateEvent:
            logger.info(f"Duplicate event {event_id} ({event_type}), skipped")
            return GatewayResult(
                accepted=True, event_id=event_id, event_type=event_type, duplicate=True
            )
        except AppError as e:
            if isinstance(e, TransientStoreFailure):
                raise
            return self._record_failure(session, kind, event_id, event_type, obj, payload, e)
        except IntegrityError as e:
            conflict = Conflict(code=409301, message=f"Constraint violated: {e.orig}")
            return self._record_failure(
                session, kind, event_id, event_type, obj, payload, conflict
            )

        outcome = EventOutcome(record.outcome)
        logger.info(f"Event {event_id} ({event_type}) processed: {outcome.value}")
        return GatewayResult(
            accepted=True, event_id=event_id, event_type=event_type, outcome=outcome
        )

    def _record_failure(
        self,
        session: Session,
        kind: StripeEventType | None,
        event_id: str,
        event_type: str,
        obj: dict[str, Any],
        payload: dict[str, Any],
        error: AppError,
    ) -> GatewayResult:
        logger.error(
            f"Event {event_id} ({event_type}) failed: {error.message} (code={error.code})"
        )
        on_failure = self.failure_handlers.get(kind) if kind is not None else None
        try:
            with unit_of_work(session):
                session.add(
                    ProcessedEvent(
                        event_id=event_id,
                        event_type=event_type,
                        object_id=_object_id(obj),
                        outcome=EventOutcome.failed,
                        error=error.message[:255],
                        payload=payload,
                    )
                )
                if on_failure is not None:
                    on_failure(session, obj, error, self.clock())
        except IntegrityError:
            logger.info(f"Event {event_id} was recorded concurrently")
        return GatewayResult(
            accepted=True,
            event_id=event_id,
            event_type=event_type,
            outcome=EventOutcome.failed,
        )


def _object_id(obj: dict[str, Any]) -> str | None:
    value = obj.get("id")
    return str(value)[:255] if value else None
