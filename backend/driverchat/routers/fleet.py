"""Tenant, driver and customer registration."""
from __future__ import annotations

import re

from fastapi import APIRouter, Depends, HTTPException

from driverchat.core.auth import TenantContext, get_tenant_context, require_roles
from driverchat.core.logging import logger
from driverchat.models.fleet import CustomerCreateRequest, DriverCreateRequest, TenantCreateRequest
from driverchat.services.fleet_state import fleet_state_store

router = APIRouter(prefix="/fleet", tags=["fleet"])


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-") or "tenant"


@router.post("/tenants")
def create_tenant(
    request: TenantCreateRequest,
    context: TenantContext = Depends(require_roles("admin")),
):
    tenant_id = (request.tenant_id or "").strip() or _slug(request.name)
    tenant = fleet_state_store.upsert_tenant(tenant_id, request.name, request.config)
    logger.info("Tenant saved", tenant_id=tenant_id, actor=context.actor)
    return tenant.model_dump(mode="json")


@router.get("/tenant")
def get_tenant(context: TenantContext = Depends(get_tenant_context)):
    return fleet_state_store.get_tenant(context.tenant_id).model_dump(mode="json")


@router.post("/drivers")
def create_driver(
    request: DriverCreateRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        driver = fleet_state_store.create_driver(
            context.tenant_id,
            name=request.name,
            phone=request.phone,
            vehicle_id=request.vehicle_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return driver.model_dump(mode="json")


@router.get("/drivers")
def list_drivers(context: TenantContext = Depends(get_tenant_context)):
    return {"drivers": [driver.model_dump(mode="json") for driver in fleet_state_store.list_drivers(context.tenant_id)]}


@router.post("/customers")
def create_customer(
    request: CustomerCreateRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    customer = fleet_state_store.create_customer(context.tenant_id, **request.model_dump())
    return customer.model_dump(mode="json")


@router.get("/customers")
def list_customers(context: TenantContext = Depends(get_tenant_context)):
    return {
        "customers": [customer.model_dump(mode="json") for customer in fleet_state_store.list_customers(context.tenant_id)]
    }
