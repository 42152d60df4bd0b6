from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from gym_enrollment.api.deps import get_member_service
from gym_enrollment.schema.schemas import EnrollmentStats
from gym_enrollment.services.member_service import MemberService

router = APIRouter()


@router.get("", response_model=List[Dict[str, Any]])
async def list_members(scope_id: str, service: MemberService = Depends(get_member_service)):
    return await service.list_members(scope_id)


@router.get("/search", response_model=List[Dict[str, Any]])
async def search_members(scope_id: str, q: str = "", service: MemberService = Depends(get_member_service)):
    """Search by name, gym member id or fingerprint id (accents ignored)."""
    return await service.search_members(scope_id, q)


@router.get("/stats", response_model=EnrollmentStats)
async def enrollment_stats(scope_id: str, device_id: Optional[str] = None,
                           service: MemberService = Depends(get_member_service)):
    return await service.get_enrollment_stats(scope_id, device_id)


@router.get("/{fingerprint_id}")
async def get_member(scope_id: str, fingerprint_id: int, service: MemberService = Depends(get_member_service)):
    member = await service.get_by_fingerprint_id(scope_id, fingerprint_id)
    if not member:
        raise HTTPException(404, "Member not found")
    return member


@router.delete("/{fingerprint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_member(scope_id: str, fingerprint_id: int, service: MemberService = Depends(get_member_service)):
    if not await service.delete_member(scope_id, fingerprint_id):
        raise HTTPException(404, "Member not found")
