from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Protocol

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from stratus.db import SessionFactory
from stratus.models import InstanceORM, InstanceRead, ProvisionRequest
from stratus.services.constants import (
    INSTANCE_STATUS_DESTROYED,
    INSTANCE_STATUS_ERROR,
    INSTANCE_STATUS_PROVISIONING,
    INSTANCE_STATUS_RUNNING,
)
from stratus.services.errors import NotFoundException, ValidationException
from stratus.services.results import ErrorDetail

logger = logging.getLogger(__name__)


class InstanceRegistry(Protocol):
    def begin_provisioning(self, request: ProvisionRequest) -> InstanceRead: ...

    def mark_running(self, instance_id: str, *, url: str, resources: dict[str, Any]) -> InstanceRead: ...

    def mark_error(self, instance_id: str, *, error: ErrorDetail, resources: dict[str, Any]) -> InstanceRead: ...

    def mark_destroyed(self, instance_id: str) -> InstanceRead | None: ...

    def get(self, instance_id: str) -> InstanceRead: ...


def _get_instance_orm(session: Session, instance_id: str) -> InstanceORM:
    if not (instance := session.get(InstanceORM, instance_id)):
        raise NotFoundException("Instance not found")
    return instance


def _ensure_subdomain_free(session: Session, *, subdomain: str, instance_id: str) -> None:
    holder = session.exec(
        select(InstanceORM)
        .where(InstanceORM.subdomain == subdomain)
        .where(InstanceORM.status != INSTANCE_STATUS_DESTROYED)
        .where(InstanceORM.instance_id != instance_id)
    ).first()
    if holder is not None:
        raise ValidationException(f"Subdomain '{subdomain}' is already in use")


def _ensure_same_shape(instance: InstanceORM, request: ProvisionRequest) -> None:
    changed = [
        field
        for field in ("subdomain", "database_tier", "compute_tier")
        if getattr(instance, field) != getattr(request, field)
    ]
    if changed:
        raise ValidationException(
            f"Instance {instance.instance_id} is running; destroy it before changing {', '.join(changed)}"
        )


class SqlInstanceRegistry:
    """Instance records kept in the orchestrator's own database."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def begin_provisioning(self, request: ProvisionRequest) -> InstanceRead:
        with self._session_factory() as session:
            _ensure_subdomain_free(session, subdomain=request.subdomain, instance_id=request.instance_id)
            now = datetime.utcnow()
            instance = session.get(InstanceORM, request.instance_id)
            if instance is None:
                instance = InstanceORM(
                    instance_id=request.instance_id,
                    owner_id=request.owner_id,
                    subdomain=request.subdomain,
                    database_tier=request.database_tier,
                    compute_tier=request.compute_tier,
                    status=INSTANCE_STATUS_PROVISIONING,
                )
            else:
                if instance.owner_id != request.owner_id:
                    raise ValidationException("Instance id is already owned by someone else")
                if instance.status == INSTANCE_STATUS_RUNNING:
                    _ensure_same_shape(instance, request)
                    logger.info("Instance_id=%s is already running; leaving it untouched", instance.instance_id)
                    return InstanceRead.model_validate(instance)
                instance.subdomain = request.subdomain
                instance.database_tier = request.database_tier
                instance.compute_tier = request.compute_tier
                instance.status = INSTANCE_STATUS_PROVISIONING
                instance.generation += 1
                instance.error_kind = None
                instance.last_error = None
                instance.unresolved_json = None
                instance.destroyed_at = None
                instance.updated_at = now
            session.add(instance)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                logger.warning("Subdomain conflict while registering instance_id=%s", request.instance_id)
                raise ValidationException(f"Subdomain '{request.subdomain}' is already in use") from exc
            session.refresh(instance)
            logger.info(
                "Registered instance_id=%s generation=%s subdomain=%s",
                instance.instance_id,
                instance.generation,
                instance.subdomain,
            )
            return InstanceRead.model_validate(instance)

    def mark_running(self, instance_id: str, *, url: str, resources: dict[str, Any]) -> InstanceRead:
        with self._session_factory() as session:
            instance = _get_instance_orm(session, instance_id)
            instance.status = INSTANCE_STATUS_RUNNING
            instance.url = url
            instance.resources_json = resources
            instance.updated_at = datetime.utcnow()
            session.add(instance)
            session.commit()
            session.refresh(instance)
            return InstanceRead.model_validate(instance)

    def mark_error(self, instance_id: str, *, error: ErrorDetail, resources: dict[str, Any]) -> InstanceRead:
        with self._session_factory() as session:
            instance = _get_instance_orm(session, instance_id)
            instance.status = INSTANCE_STATUS_ERROR
            instance.error_kind = error.kind
            instance.last_error = error.message
            instance.unresolved_json = [handle.describe() for handle in error.unresolved] or None
            instance.resources_json = resources
            instance.updated_at = datetime.utcnow()
            session.add(instance)
            session.commit()
            session.refresh(instance)
            return InstanceRead.model_validate(instance)

    def mark_destroyed(self, instance_id: str) -> InstanceRead | None:
        with self._session_factory() as session:
            instance = session.get(InstanceORM, instance_id)
            if instance is None:
                return None
            if instance.status != INSTANCE_STATUS_DESTROYED:
                now = datetime.utcnow()
                instance.status = INSTANCE_STATUS_DESTROYED
                instance.url = None
                instance.resources_json = None
                instance.destroyed_at = now
                instance.updated_at = now
                session.add(instance)
                session.commit()
                session.refresh(instance)
            return InstanceRead.model_validate(instance)

    def get(self, instance_id: str) -> InstanceRead:
        with self._session_factory() as session:
            return InstanceRead.model_validate(_get_instance_orm(session, instance_id))
