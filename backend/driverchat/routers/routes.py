"""Route import and read endpoints for the back office."""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from driverchat.core.auth import TenantContext, get_tenant_context, require_roles
from driverchat.core.logging import logger
from driverchat.models.fleet import RouteImportRequest, RouteStatus
from driverchat.services.fleet_state import fleet_state_store
from driverchat.services.lifecycle import lifecycle_service

router = APIRouter(prefix="/routes", tags=["routes"])


@router.post("/import")
def import_route(
    request: RouteImportRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        route = lifecycle_service.import_route(context.tenant_id, request, actor=context.actor)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.error("Failed to import route", name=request.name, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    return route.model_dump(mode="json")


@router.get("")
def list_routes(
    route_date: Optional[date] = Query(default=None, alias="date"),
    driver_id: Optional[str] = Query(default=None),
    status: Optional[RouteStatus] = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
):
    routes = fleet_state_store.list_routes(
        context.tenant_id,
        driver_id=driver_id,
        route_date=route_date,
        statuses=[status] if status else None,
    )
    return {"routes": [route.model_dump(mode="json") for route in routes]}


@router.get("/{route_id}")
def get_route(route_id: str, context: TenantContext = Depends(get_tenant_context)):
    route = fleet_state_store.get_route(context.tenant_id, route_id)
    if route is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return route.model_dump(mode="json")


@router.get("/{route_id}/timeline")
def get_route_timeline(route_id: str, context: TenantContext = Depends(get_tenant_context)):
    if fleet_state_store.get_route(context.tenant_id, route_id) is None:
        raise HTTPException(status_code=404, detail="Route not found")
    return {"route_id": route_id, "events": fleet_state_store.list_timeline(context.tenant_id, route_id)}
