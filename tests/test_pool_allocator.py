from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import threading

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from stratus.db import session_factory_for
from stratus.models import SharedPoolMemberCreate, SharedPoolMemberORM, SharedPoolReservationORM
from stratus.services.errors import AllocationExhausted, NotFoundException, ValidationException
from stratus.services.pool import SharedPoolAllocator


def _add(allocator: SharedPoolAllocator, member_id: str, *, max_count: int, current: int = 0) -> None:
    allocator.add_member(
        SharedPoolMemberCreate(id=member_id, endpoint=f"{member_id}.internal:5432", max_count=max_count)
    )
    for i in range(current):
        allocator.reserve(f"seed-{member_id}-{i}", database_name=f"seed_{i}")


def test_reserve_picks_least_loaded_member(allocator) -> None:
    _add(allocator, "pg-a", max_count=10, current=3)
    _add(allocator, "pg-b", max_count=10, current=1)

    placement = allocator.reserve("inst-1", database_name="instance_1")

    assert placement.member_id == "pg-b"
    assert placement.endpoint == "pg-b.internal:5432"
    assert allocator.get_member("pg-b").current_count == 2


def test_reserve_breaks_ties_by_lowest_id(allocator) -> None:
    _add(allocator, "pg-c", max_count=5)
    _add(allocator, "pg-a", max_count=5)
    _add(allocator, "pg-b", max_count=5)

    assert allocator.reserve("inst-1", database_name="instance_1").member_id == "pg-a"


def test_reserve_skips_full_and_inactive_members(allocator) -> None:
    _add(allocator, "pg-a", max_count=1, current=1)
    _add(allocator, "pg-b", max_count=5)
    _add(allocator, "pg-c", max_count=5)
    allocator.set_member_active("pg-b", active=False)

    assert allocator.reserve("inst-1", database_name="instance_1").member_id == "pg-c"


def test_reserve_raises_when_pool_exhausted(allocator) -> None:
    _add(allocator, "pg-a", max_count=1, current=1)

    with pytest.raises(AllocationExhausted):
        allocator.reserve("inst-1", database_name="instance_1")
    assert allocator.get_member("pg-a").current_count == 1


def test_reserve_retries_after_losing_a_slot_race(allocator, monkeypatch) -> None:
    _add(allocator, "pg-a", max_count=5)
    _add(allocator, "pg-b", max_count=5)
    claim = SharedPoolAllocator._claim_slot
    attempts = []

    def _lose_first_race(session):
        attempts.append(1)
        # Another writer filled the chosen member between subquery and update.
        return None if len(attempts) == 1 else claim(session)

    monkeypatch.setattr(allocator, "_claim_slot", _lose_first_race)

    placement = allocator.reserve("inst-1", database_name="instance_1")

    assert len(attempts) == 2
    assert placement.member_id == "pg-a"
    assert allocator.get_member("pg-a").current_count == 1


def test_reserve_gives_up_after_repeated_slot_races(allocator, monkeypatch) -> None:
    _add(allocator, "pg-a", max_count=5)
    attempts = []

    def _always_lose(session):
        attempts.append(1)
        return None

    monkeypatch.setattr(allocator, "_claim_slot", _always_lose)

    with pytest.raises(AllocationExhausted):
        allocator.reserve("inst-1", database_name="instance_1")
    assert len(attempts) == 5
    assert allocator.get_member("pg-a").current_count == 0
    assert allocator.reservation_for("inst-1") is None


def test_reserve_with_empty_pool_raises(allocator) -> None:
    with pytest.raises(AllocationExhausted):
        allocator.reserve("inst-1", database_name="instance_1")


def test_reserve_is_idempotent_per_instance(allocator) -> None:
    _add(allocator, "pg-a", max_count=3)

    first = allocator.reserve("inst-1", database_name="instance_1")
    second = allocator.reserve("inst-1", database_name="instance_1")

    assert first == second
    assert allocator.get_member("pg-a").current_count == 1


def test_release_decrements_once(allocator) -> None:
    _add(allocator, "pg-a", max_count=3)
    allocator.reserve("inst-1", database_name="instance_1")

    assert allocator.release("inst-1") is True
    assert allocator.release("inst-1") is False
    assert allocator.get_member("pg-a").current_count == 0
    assert allocator.reservation_for("inst-1") is None


def test_release_unknown_instance_is_noop(allocator) -> None:
    assert allocator.release("never-reserved") is False


def test_draining_member_keeps_existing_tenants(allocator) -> None:
    _add(allocator, "pg-a", max_count=3)
    allocator.reserve("inst-1", database_name="instance_1")

    drained = allocator.set_member_active("pg-a", active=False)

    assert drained.active is False
    assert drained.current_count == 1
    assert allocator.reservation_for("inst-1").member_id == "pg-a"
    assert [m.id for m in allocator.list_members(active_only=True)] == []
    with pytest.raises(AllocationExhausted):
        allocator.reserve("inst-2", database_name="instance_2")


def test_add_member_rejects_duplicates(allocator) -> None:
    _add(allocator, "pg-a", max_count=3)
    with pytest.raises(ValidationException):
        _add(allocator, "pg-a", max_count=3)


def test_member_lookup_and_update_of_unknown_member(allocator) -> None:
    with pytest.raises(NotFoundException):
        allocator.get_member("missing")
    with pytest.raises(NotFoundException):
        allocator.set_member_active("missing", active=True)


def test_capacity_constraint_is_enforced_by_database(db_session) -> None:
    db_session.add(SharedPoolMemberORM(id="pg-x", endpoint="x:5432", current_count=2, max_count=1))
    with pytest.raises(IntegrityError):
        db_session.commit()


def test_concurrent_reservations_never_exceed_capacity(file_engine) -> None:
    allocator = SharedPoolAllocator(session_factory_for(file_engine))
    _add(allocator, "pg-a", max_count=3)
    _add(allocator, "pg-b", max_count=2)
    start = threading.Barrier(12)

    def _reserve(i: int) -> str:
        start.wait()
        try:
            return allocator.reserve(f"inst-{i}", database_name=f"instance_{i}").member_id
        except AllocationExhausted:
            return "exhausted"

    with ThreadPoolExecutor(max_workers=12) as pool:
        outcomes = list(pool.map(_reserve, range(12)))

    assert outcomes.count("exhausted") == 7
    assert outcomes.count("pg-a") == 3
    assert outcomes.count("pg-b") == 2
    members = {m.id: m for m in allocator.list_members()}
    assert members["pg-a"].current_count == 3
    assert members["pg-b"].current_count == 2

    with session_factory_for(file_engine)() as session:
        reservations = session.exec(select(SharedPoolReservationORM)).all()
    assert len(reservations) == 5
