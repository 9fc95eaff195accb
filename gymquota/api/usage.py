"""Usage endpoints: limit checks, enforcement and consumption per resource."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from gymquota.core.errors import QuotaUnavailableError
from gymquota.features.plans.catalog import ResourceKind
from gymquota.features.quota.service import QuotaService, get_quota_service

router = APIRouter(prefix="/v1/organizations/{organization_id}/usage", tags=["usage"])


class AmountRequest(BaseModel):
    amount: int = Field(default=1, ge=1)


@router.get("")
def usage_summary(organization_id: str, quota: QuotaService = Depends(get_quota_service)):
    return quota.usage_summary(organization_id).model_dump(mode="json")


@router.get("/{resource}")
def check_limit(
    organization_id: str,
    resource: str,
    amount: int = Query(1, ge=1),
    quota: QuotaService = Depends(get_quota_service),
):
    """Always 200 for known organizations; `allowed` carries the decision."""
    check = quota.check_limit(ResourceKind.parse(resource), organization_id, amount=amount)
    return check.model_dump(mode="json")


@router.post("/{resource}/enforce")
def enforce(
    organization_id: str,
    resource: str,
    body: Optional[AmountRequest] = None,
    quota: QuotaService = Depends(get_quota_service),
):
    check = quota.enforce(ResourceKind.parse(resource), organization_id, body.amount if body else 1)
    return check.model_dump(mode="json")


@router.post("/{resource}/consume")
def consume(
    organization_id: str,
    resource: str,
    body: Optional[AmountRequest] = None,
    quota: QuotaService = Depends(get_quota_service),
):
    result = quota.consume(ResourceKind.parse(resource), organization_id, body.amount if body else 1)
    if not result.success:
        raise QuotaUnavailableError(result.message, details=result.model_dump(mode="json", exclude={"message"}))
    return result.model_dump(mode="json")
