from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.apps.api.deps import get_db
from shadowsync.persistence.repos import applications as applications_repo
from shadowsync.services.dedup import merge_duplicate_applications, recompute_application_risk


router = APIRouter(prefix="/applications", tags=["applications"])


class OrganizationRequest(BaseModel):
    organization_id: str


class ApplicationResponse(BaseModel):
    id: str
    name: str
    category: str | None
    risk_level: str
    management_status: str
    total_permissions: int
    user_count: int
    all_scopes: list[str]
    provider_app_ids: str | None


@router.get("", response_model=list[ApplicationResponse])
async def list_applications(organization_id: str, db: AsyncSession = Depends(get_db)) -> list[ApplicationResponse]:
    apps = await applications_repo.list_applications(db, organization_id)
    return [ApplicationResponse.model_validate(app, from_attributes=True) for app in apps]


@router.post("/merge-duplicates")
async def merge_duplicates(payload: OrganizationRequest, db: AsyncSession = Depends(get_db)) -> dict:
    report = await merge_duplicate_applications(db, payload.organization_id)
    await db.commit()
    message = "Successfully merged duplicate applications" if report.changed else "No duplicate applications found"
    return {"message": message, "report": asdict(report)}


@router.post("/fix-risk-levels")
async def fix_risk_levels(payload: OrganizationRequest, db: AsyncSession = Depends(get_db)) -> dict:
    report = await recompute_application_risk(db, payload.organization_id)
    await db.commit()
    return {
        "message": f"Successfully fixed risk levels for {report.applications_updated} applications",
        "report": asdict(report),
    }
