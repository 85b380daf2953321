"""Driver journey (shift and break) endpoints."""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from driverchat.core.auth import TenantContext, get_tenant_context
from driverchat.core.logging import logger
from driverchat.models.fleet import JourneyEventRequest
from driverchat.services.journey import InvalidJourneyTransition, journey_service

router = APIRouter(prefix="/journey", tags=["journey"])


@router.post("/event")
def record_journey_event(
    request: JourneyEventRequest,
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        event = journey_service.record_event(
            context.tenant_id,
            request.driver_id,
            request.type,
            latitude=request.latitude,
            longitude=request.longitude,
            location_address=request.location_address,
            notes=request.notes,
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Driver not found")
    except InvalidJourneyTransition as exc:
        raise HTTPException(status_code=409, detail=exc.reason)
    return event.model_dump(mode="json")


@router.get("/{driver_id}/history")
def journey_history(
    driver_id: str,
    day: Optional[date] = Query(default=None, alias="date"),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        events = journey_service.history(context.tenant_id, driver_id, day)
    except KeyError:
        raise HTTPException(status_code=404, detail="Driver not found")
    except Exception as exc:
        logger.error("Failed to load journey history", driver_id=driver_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    return {"driver_id": driver_id, "events": [event.model_dump(mode="json") for event in events]}
