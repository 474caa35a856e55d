from __future__ import annotations

from fastapi import APIRouter, Depends, status

from stratus.models import SharedPoolMemberCreate, SharedPoolMemberRead, SharedPoolMemberUpdate
from stratus.provisioner import Orchestrator, get_orchestrator

router = APIRouter(prefix="/pool", tags=["pool"])


@router.post("/members", response_model=SharedPoolMemberRead, status_code=status.HTTP_201_CREATED)
def add_member(
    payload: SharedPoolMemberCreate, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> SharedPoolMemberRead:
    return orchestrator.allocator.add_member(payload)


@router.get("/members", response_model=list[SharedPoolMemberRead])
def list_members(
    active_only: bool = False, orchestrator: Orchestrator = Depends(get_orchestrator)
) -> list[SharedPoolMemberRead]:
    return orchestrator.allocator.list_members(active_only=active_only)


@router.get("/members/{member_id}", response_model=SharedPoolMemberRead)
def get_member(member_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> SharedPoolMemberRead:
    return orchestrator.allocator.get_member(member_id)


@router.patch("/members/{member_id}", response_model=SharedPoolMemberRead)
def update_member(
    member_id: str,
    payload: SharedPoolMemberUpdate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SharedPoolMemberRead:
    return orchestrator.allocator.set_member_active(member_id, active=payload.active)
