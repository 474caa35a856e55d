from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from stratus.api.utils import status_for
from stratus.models import DestroyResultRead, HealthRead, InstanceRead, ProvisionRequest, ProvisionResultRead
from stratus.provisioner import Orchestrator, get_orchestrator
from stratus.services.constants import INSTANCE_STATUS_RUNNING

router = APIRouter(prefix="/instances", tags=["instances"])


@router.post("", response_model=ProvisionResultRead, status_code=status.HTTP_201_CREATED)
def provision_instance(
    payload: ProvisionRequest,
    response: Response,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ProvisionResultRead:
    result = orchestrator.provision_instance(payload)
    if result.status != INSTANCE_STATUS_RUNNING and result.error is not None:
        # Rolled back: report the failure with the stages that did complete.
        failure = type(result.error.exception) if result.error.exception else None
        response.status_code = status_for(failure, default=status.HTTP_502_BAD_GATEWAY)
    return ProvisionResultRead.model_validate(result.as_dict())


@router.get("/{instance_id}", response_model=InstanceRead)
def get_instance(instance_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> InstanceRead:
    return orchestrator.get_instance(instance_id)


@router.delete("/{instance_id}", response_model=DestroyResultRead)
def destroy_instance(instance_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> DestroyResultRead:
    return DestroyResultRead.model_validate(orchestrator.destroy_instance(instance_id).as_dict())


@router.get("/{instance_id}/health", response_model=HealthRead)
def health_check(
    instance_id: str,
    url: str | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> HealthRead:
    target = url or orchestrator.get_instance(instance_id).url
    healthy = orchestrator.health_check(instance_id, target)
    return HealthRead(instance_id=instance_id, url=target, healthy=healthy)
