from __future__ import annotations

from datetime import datetime
import logging
import threading

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from stratus.backends.base import PoolPlacement
from stratus.db import SessionFactory
from stratus.models import (
    SharedPoolMemberCreate,
    SharedPoolMemberORM,
    SharedPoolMemberRead,
    SharedPoolReservationORM,
)
from stratus.services.errors import AllocationExhausted, NotFoundException, ValidationException

logger = logging.getLogger(__name__)

# Least-loaded active member with headroom, lowest id on ties. The outer
# predicate re-checks capacity so the increment can never overbook, even if
# another writer moved the counter between the subquery and the update.
_RESERVE_SLOT_SQL = text(
    """
    UPDATE shared_pool_member
    SET current_count = current_count + 1,
        updated_at = :now_ts
    WHERE id = (
        SELECT id
        FROM shared_pool_member
        WHERE active = :active
          AND current_count < max_count
        ORDER BY current_count, id
        LIMIT 1
    )
      AND current_count < max_count
    RETURNING id, endpoint, current_count, max_count
    """
)

_HEADROOM_SQL = text(
    """
    SELECT 1
    FROM shared_pool_member
    WHERE active = :active
      AND current_count < max_count
    LIMIT 1
    """
)

# Another process can fill the member picked by the subquery before the outer
# predicate runs; the claim is repeated while some member still has headroom.
_RESERVE_ATTEMPTS = 5

_RELEASE_SLOT_SQL = text(
    """
    UPDATE shared_pool_member
    SET current_count = current_count - 1,
        updated_at = :now_ts
    WHERE id = :member_id
      AND current_count > 0
    """
)


class SharedPoolAllocator:
    """Places tenant databases on shared hosts; sole writer of ``current_count``."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def add_member(self, payload: SharedPoolMemberCreate) -> SharedPoolMemberRead:
        member = SharedPoolMemberORM(
            id=payload.id,
            endpoint=payload.endpoint,
            max_count=payload.max_count,
            current_count=0,
        )
        with self._lock, self._session_factory() as session:
            session.add(member)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                logger.warning("Pool member %s already exists", payload.id)
                raise ValidationException(f"Pool member {payload.id} already exists") from exc
            session.refresh(member)
            logger.info(
                "Added shared pool member id=%s endpoint=%s max_count=%s",
                member.id,
                member.endpoint,
                member.max_count,
            )
            return SharedPoolMemberRead.model_validate(member)

    def list_members(self, *, active_only: bool = False) -> list[SharedPoolMemberRead]:
        with self._session_factory() as session:
            stmt = select(SharedPoolMemberORM)
            if active_only:
                stmt = stmt.where(SharedPoolMemberORM.active == True)  # noqa: E712
            stmt = stmt.order_by(SharedPoolMemberORM.id)
            return [SharedPoolMemberRead.model_validate(m) for m in session.exec(stmt).all()]

    def get_member(self, member_id: str) -> SharedPoolMemberRead:
        with self._session_factory() as session:
            if not (member := session.get(SharedPoolMemberORM, member_id)):
                raise NotFoundException("Pool member not found")
            return SharedPoolMemberRead.model_validate(member)

    def set_member_active(self, member_id: str, *, active: bool) -> SharedPoolMemberRead:
        """Enable or drain a member; draining keeps existing tenants in place."""
        with self._lock, self._session_factory() as session:
            if not (member := session.get(SharedPoolMemberORM, member_id)):
                raise NotFoundException("Pool member not found")
            member.active = active
            member.updated_at = datetime.utcnow()
            session.add(member)
            session.commit()
            session.refresh(member)
            logger.info("Pool member id=%s active=%s", member_id, active)
            return SharedPoolMemberRead.model_validate(member)

    def reservation_for(self, instance_id: str) -> PoolPlacement | None:
        with self._session_factory() as session:
            return self._placement_for(session, instance_id)

    def reserve(self, instance_id: str, *, database_name: str) -> PoolPlacement:
        """Atomically take one slot for an instance, or return the slot it already holds."""
        with self._lock, self._session_factory() as session:
            if (existing := self._placement_for(session, instance_id)) is not None:
                logger.info(
                    "Reusing shared pool reservation instance_id=%s member_id=%s",
                    instance_id,
                    existing.member_id,
                )
                return existing

            row = None
            for attempt in range(1, _RESERVE_ATTEMPTS + 1):
                row = self._claim_slot(session)
                if row is not None or not self._has_headroom(session):
                    break
                logger.info(
                    "Shared pool slot taken concurrently instance_id=%s attempt=%s; retrying",
                    instance_id,
                    attempt,
                )
            if row is None:
                session.rollback()
                logger.warning("Shared pool exhausted; no member has headroom for instance_id=%s", instance_id)
                raise AllocationExhausted("No shared database host has capacity for another tenant")

            member_id, endpoint, current_count, max_count = row
            session.add(
                SharedPoolReservationORM(
                    instance_id=instance_id,
                    member_id=member_id,
                    database_name=database_name,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # Another process reserved for this instance first; keep its slot, drop ours.
                session.rollback()
                existing = self._placement_for(session, instance_id)
                if existing is None:
                    raise
                return existing

            logger.info(
                "Reserved shared pool slot instance_id=%s member_id=%s usage=%s/%s",
                instance_id,
                member_id,
                current_count,
                max_count,
            )
            return PoolPlacement(member_id=member_id, endpoint=endpoint, database_name=database_name)

    def release(self, instance_id: str) -> bool:
        """Give back an instance's slot. Releasing twice is a no-op."""
        with self._lock, self._session_factory() as session:
            reservation = session.get(SharedPoolReservationORM, instance_id)
            if reservation is None:
                logger.debug("No shared pool reservation to release for instance_id=%s", instance_id)
                return False
            member_id = reservation.member_id
            session.delete(reservation)
            session.flush()
            session.execute(_RELEASE_SLOT_SQL, {"now_ts": datetime.utcnow(), "member_id": member_id})
            session.commit()
            logger.info("Released shared pool slot instance_id=%s member_id=%s", instance_id, member_id)
            return True

    @staticmethod
    def _claim_slot(session):
        return session.execute(
            _RESERVE_SLOT_SQL,
            {"now_ts": datetime.utcnow(), "active": True},
        ).first()

    @staticmethod
    def _has_headroom(session) -> bool:
        return session.execute(_HEADROOM_SQL, {"active": True}).first() is not None

    @staticmethod
    def _placement_for(session, instance_id: str) -> PoolPlacement | None:
        reservation = session.get(SharedPoolReservationORM, instance_id)
        if reservation is None:
            return None
        member = session.get(SharedPoolMemberORM, reservation.member_id)
        if member is None:
            return None
        return PoolPlacement(
            member_id=member.id,
            endpoint=member.endpoint,
            database_name=reservation.database_name,
        )
