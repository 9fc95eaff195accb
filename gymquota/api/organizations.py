"""Organization endpoints: registration, lookup and explicit plan changes."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from gymquota.core.errors import NotFoundError
from gymquota.features.organizations import service as organization_service
from gymquota.features.plans.catalog import PlanTier
from gymquota.features.quota.service import QuotaService, get_quota_service

router = APIRouter(prefix="/v1/organizations", tags=["organizations"])


class CreateOrganizationRequest(BaseModel):
    organization_id: str
    name: str
    plan_tier: Optional[str] = None

    @field_validator("organization_id", "name")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class ChangePlanRequest(BaseModel):
    plan_tier: str


@router.post("", status_code=201)
def create_organization(body: CreateOrganizationRequest):
    tier = PlanTier.parse(body.plan_tier) if body.plan_tier else PlanTier.FREE
    organization = organization_service.create_organization(body.organization_id, body.name, tier)
    return organization.model_dump(mode="json")


@router.get("/{organization_id}")
def get_organization(organization_id: str, quota: QuotaService = Depends(get_quota_service)):
    organization = organization_service.get_organization(organization_id)
    if organization is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    payload = organization.model_dump(mode="json")
    payload["features"] = quota.catalog.feature_flags(organization.plan_tier)
    return payload


@router.put("/{organization_id}/plan")
def change_plan(
    organization_id: str,
    body: ChangePlanRequest,
    quota: QuotaService = Depends(get_quota_service),
):
    organization = quota.change_plan_tier(organization_id, PlanTier.parse(body.plan_tier))
    return organization.model_dump(mode="json")
