"""Back-office corrections on individual deliveries."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from driverchat.core.auth import TenantContext, require_roles
from driverchat.models.fleet import DeliveryReopenRequest
from driverchat.services.lifecycle import LifecycleError, lifecycle_service

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


@router.post("/{delivery_id}/reopen")
def reopen_delivery(
    delivery_id: str,
    request: DeliveryReopenRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        delivery = lifecycle_service.reopen_delivery(
            context.tenant_id,
            delivery_id,
            actor=context.actor,
            reason=request.reason,
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Delivery not found")
    except LifecycleError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return delivery.model_dump(mode="json")
