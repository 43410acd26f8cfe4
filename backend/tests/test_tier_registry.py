from __future__ import annotations

import threading
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from fundify.api.errors import CapacityExceeded, NotFound
from fundify.enums import BillingInterval
from fundify.models import MembershipTier, User
from fundify.services.tier_registry import release_slot, reserve_slot


def test_reserve_until_full(db, make_user, make_tier):
    tier = make_tier(make_user(), max_subscribers=2)

    reserve_slot(db, tier.id)
    reserve_slot(db, tier.id)
    with pytest.raises(CapacityExceeded) as exc:
        reserve_slot(db, tier.id)
    db.commit()

    assert exc.value.code == 409201
    assert exc.value.status_code == 409
    db.refresh(tier)
    assert tier.current_subscribers == 2


def test_reserve_unlimited_tier(db, make_user, make_tier):
    tier = make_tier(make_user())
    for _ in range(5):
        reserve_slot(db, tier.id)
    db.commit()
    db.refresh(tier)
    assert tier.current_subscribers == 5


def test_reserve_unknown_tier(db):
    with pytest.raises(NotFound):
        reserve_slot(db, 123456789)


def test_release_frees_a_slot_for_the_next_subscriber(db, make_user, make_tier):
    tier = make_tier(make_user(), max_subscribers=1, current_subscribers=1)

    with pytest.raises(CapacityExceeded):
        reserve_slot(db, tier.id)
    release_slot(db, tier.id)
    reserve_slot(db, tier.id)
    db.commit()

    db.refresh(tier)
    assert tier.current_subscribers == 1


def test_release_is_clamped_at_zero(db, make_user, make_tier):
    tier = make_tier(make_user())
    release_slot(db, tier.id)
    release_slot(db, tier.id)
    db.commit()

    count = db.exec(
        select(MembershipTier.current_subscribers).where(MembershipTier.id == tier.id)
    ).one()
    assert count == 0


def test_reserve_is_a_single_conditional_update(db, make_user, make_tier):
    tier = make_tier(make_user(), max_subscribers=1)
    statements: list[str] = []

    def _capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    bind = db.get_bind()
    event.listen(bind, "before_cursor_execute", _capture)
    try:
        reserve_slot(db, tier.id)
    finally:
        event.remove(bind, "before_cursor_execute", _capture)
    db.commit()

    assert len(statements) == 1
    assert statements[0].lstrip().upper().startswith("UPDATE MEMBERSHIP_TIERS")
    assert "current_subscribers <" in statements[0]


def test_concurrent_reservations_take_the_last_slot_once(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        creator = User(email="race@example.com")
        session.add(creator)
        session.commit()
        session.refresh(creator)
        tier = MembershipTier(
            creator_id=creator.id,
            name="Last seat",
            price=Decimal("5.00"),
            interval=BillingInterval.monthly,
            perks=[],
            max_subscribers=1,
        )
        session.add(tier)
        session.commit()
        tier_id = tier.id

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _reserve() -> None:
        with Session(engine) as session:
            barrier.wait()
            try:
                reserve_slot(session, tier_id)
                session.commit()
                outcome = "reserved"
            except CapacityExceeded:
                session.rollback()
                outcome = "full"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_reserve) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ["full", "reserved"]
    with Session(engine) as session:
        assert session.get(MembershipTier, tier_id).current_subscribers == 1
    engine.dispose()
