"""Route and delivery lifecycle state machine.

All transitions go through :class:`FleetStateStore` conditional updates; the
affected-row count decides whether this call applied the change or merely
observed it already applied.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from driverchat.core.logging import logger
from driverchat.models.fleet import (
    DeliveryRecord,
    DeliveryStatus,
    RESOLVED_DELIVERY_STATUSES,
    RouteImportRequest,
    RouteRecord,
    RouteStatus,
    WorkflowStep,
)
from driverchat.services.fleet_state import FleetStateStore, fleet_state_store
from driverchat.services.phone_identity import phone_candidates


class LifecycleError(Exception):
    """Base class for route/delivery policy violations."""


class RouteNotFound(LifecycleError, KeyError):
    def __init__(self, route_id: str):
        LifecycleError.__init__(self, f"Route {route_id} not found")
        self.route_id = route_id

    def __str__(self) -> str:
        return self.args[0]


class DeliveryNotFound(LifecycleError, KeyError):
    def __init__(self, delivery_id: str):
        LifecycleError.__init__(self, f"Delivery {delivery_id} not found")
        self.delivery_id = delivery_id

    def __str__(self) -> str:
        return self.args[0]


class RouteAlreadyActive(LifecycleError):
    """The route, or another route of the same driver, is already ACTIVE."""

    def __init__(self, route_id: str, active_route_id: Optional[str] = None):
        self.route_id = route_id
        self.active_route_id = active_route_id or route_id
        if self.active_route_id == route_id:
            message = f"Route {route_id} is already active"
        else:
            message = f"Driver already has route {self.active_route_id} active"
        super().__init__(message)


class RouteTransitionBlocked(LifecycleError):
    """Deliveries on the route prevent the requested transition."""

    def __init__(self, route_id: str, outstanding: int, message: str):
        super().__init__(message)
        self.route_id = route_id
        self.outstanding = outstanding


class InvalidRouteState(LifecycleError):
    def __init__(self, route_id: str, status: RouteStatus, operation: str):
        super().__init__(f"Cannot {operation} route {route_id} while it is {status.value}")
        self.route_id = route_id
        self.status = status
        self.operation = operation


class InvalidDeliveryState(LifecycleError):
    def __init__(self, delivery_id: str, status: DeliveryStatus, operation: str):
        super().__init__(f"Cannot {operation} delivery {delivery_id} while it is {status.value}")
        self.delivery_id = delivery_id
        self.status = status
        self.operation = operation


@dataclass
class ResolutionResult:
    """Outcome of a resolve attempt.

    ``applied`` is False when the delivery was already terminal; ``delivery``
    then carries the status recorded by the earlier call.
    """

    applied: bool
    delivery: DeliveryRecord
    route_completed: bool = False


@dataclass
class FinishResult:
    applied: bool
    route: RouteRecord


class LifecycleService:
    """Legal transitions for routes and their deliveries."""

    def __init__(self, store: FleetStateStore | None = None):
        self.store = store or fleet_state_store

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _require_route(self, tenant_id: str, route_id: str) -> RouteRecord:
        route = self.store.get_route(tenant_id, route_id)
        if route is None:
            raise RouteNotFound(route_id)
        return route

    def _require_delivery(self, tenant_id: str, delivery_id: str) -> DeliveryRecord:
        delivery = self.store.get_delivery(tenant_id, delivery_id)
        if delivery is None:
            raise DeliveryNotFound(delivery_id)
        return delivery

    def _other_active_route(self, tenant_id: str, route: RouteRecord) -> Optional[RouteRecord]:
        if not route.driver_id:
            return None
        for candidate in self.store.list_routes(tenant_id, driver_id=route.driver_id, statuses=[RouteStatus.ACTIVE]):
            if candidate.route_id != route.route_id:
                return candidate
        return None

    def start_route(self, tenant_id: str, route_id: str, actor: str = "system") -> RouteRecord:
        route = self._require_route(tenant_id, route_id)
        if route.status == RouteStatus.ACTIVE:
            raise RouteAlreadyActive(route_id)
        if route.status != RouteStatus.PLANNED:
            raise InvalidRouteState(route_id, route.status, "start")

        if not self.store.activate_route(tenant_id, route_id, self._now()):
            current = self._require_route(tenant_id, route_id)
            if current.status == RouteStatus.ACTIVE:
                raise RouteAlreadyActive(route_id)
            other = self._other_active_route(tenant_id, current)
            if other is not None:
                raise RouteAlreadyActive(route_id, other.route_id)
            raise InvalidRouteState(route_id, current.status, "start")

        self.store.record_timeline_event(
            tenant_id,
            route_id,
            event_type="route_started",
            actor=actor,
            details={"driver_id": route.driver_id},
        )
        logger.info("Route started", tenant_id=tenant_id, route_id=route_id, driver_id=route.driver_id)
        return self._require_route(tenant_id, route_id)

    def exit_route(self, tenant_id: str, route_id: str, actor: str = "system") -> RouteRecord:
        route = self._require_route(tenant_id, route_id)
        if route.status != RouteStatus.ACTIVE:
            raise InvalidRouteState(route_id, route.status, "exit")

        if not self.store.revert_route(tenant_id, route_id):
            current = self._require_route(tenant_id, route_id)
            processed = sum(1 for item in current.deliveries if not item.is_open)
            if current.status == RouteStatus.ACTIVE and processed:
                raise RouteTransitionBlocked(
                    route_id,
                    processed,
                    f"Route {route_id} already has {processed} processed deliveries",
                )
            raise InvalidRouteState(route_id, current.status, "exit")

        self.store.record_timeline_event(tenant_id, route_id, event_type="route_exited", actor=actor)
        logger.info("Route reverted to planned", tenant_id=tenant_id, route_id=route_id)
        return self._require_route(tenant_id, route_id)

    def resolve_delivery(
        self,
        tenant_id: str,
        delivery_id: str,
        outcome: DeliveryStatus,
        reason: Optional[str] = None,
        proof_ref: Optional[str] = None,
        actor: str = "system",
    ) -> ResolutionResult:
        outcome = DeliveryStatus(outcome)
        if outcome not in RESOLVED_DELIVERY_STATUSES:
            raise ValueError(f"Unsupported delivery outcome {outcome.value}")
        existing = self._require_delivery(tenant_id, delivery_id)

        applied = self.store.resolve_delivery(tenant_id, delivery_id, outcome, reason=reason, proof_ref=proof_ref)
        route_completed = False
        if applied:
            self.store.record_timeline_event(
                tenant_id,
                existing.route_id,
                event_type=f"delivery_{outcome.value.lower()}",
                actor=actor,
                delivery_id=delivery_id,
                details={"reason": reason, "proof_ref": proof_ref},
            )
            route_completed = self._complete_if_done(tenant_id, existing.route_id, actor)
            logger.info(
                "Delivery resolved",
                tenant_id=tenant_id,
                delivery_id=delivery_id,
                outcome=outcome.value,
                route_completed=route_completed,
            )
        else:
            logger.info("Delivery already resolved", tenant_id=tenant_id, delivery_id=delivery_id)

        return ResolutionResult(
            applied=bool(applied),
            delivery=self._require_delivery(tenant_id, delivery_id),
            route_completed=route_completed,
        )

    def _complete_if_done(self, tenant_id: str, route_id: str, actor: str) -> bool:
        if not self.store.complete_route(tenant_id, route_id, self._now()):
            return False
        self.store.record_timeline_event(tenant_id, route_id, event_type="route_completed", actor=actor)
        logger.info("Route completed", tenant_id=tenant_id, route_id=route_id)
        return True

    def record_workflow_step(
        self,
        tenant_id: str,
        delivery_id: str,
        step: WorkflowStep,
        actor: str = "system",
    ) -> DeliveryRecord:
        step = WorkflowStep(step)
        delivery = self._require_delivery(tenant_id, delivery_id)
        self.store.stamp_workflow_step(tenant_id, delivery_id, step, self._now())
        self.store.record_timeline_event(
            tenant_id,
            delivery.route_id,
            event_type=f"delivery_{step.value}",
            actor=actor,
            delivery_id=delivery_id,
        )
        return self._require_delivery(tenant_id, delivery_id)

    def finish_route(self, tenant_id: str, route_id: str, actor: str = "system") -> FinishResult:
        route = self._require_route(tenant_id, route_id)
        if route.status == RouteStatus.COMPLETED:
            return FinishResult(applied=False, route=route)
        if route.status != RouteStatus.ACTIVE:
            raise InvalidRouteState(route_id, route.status, "finish")

        outstanding = self.store.count_open_deliveries(tenant_id, route_id)
        if outstanding:
            raise RouteTransitionBlocked(
                route_id,
                outstanding,
                f"Route {route_id} still has {outstanding} open deliveries",
            )

        applied = self._complete_if_done(tenant_id, route_id, actor)
        if not applied:
            outstanding = self.store.count_open_deliveries(tenant_id, route_id)
            if outstanding:
                raise RouteTransitionBlocked(
                    route_id,
                    outstanding,
                    f"Route {route_id} still has {outstanding} open deliveries",
                )
        return FinishResult(applied=applied, route=self._require_route(tenant_id, route_id))

    def reopen_delivery(self, tenant_id: str, delivery_id: str, actor: str, reason: str) -> DeliveryRecord:
        """Back-office correction of a DELIVERED/FAILED delivery."""
        delivery = self._require_delivery(tenant_id, delivery_id)
        if delivery.status not in RESOLVED_DELIVERY_STATUSES:
            raise InvalidDeliveryState(delivery_id, delivery.status, "reopen")

        if not self.store.reopen_delivery(tenant_id, delivery_id):
            current = self._require_delivery(tenant_id, delivery_id)
            if current.status not in RESOLVED_DELIVERY_STATUSES:
                raise InvalidDeliveryState(delivery_id, current.status, "reopen")
            route = self._require_route(tenant_id, current.route_id)
            other = self._other_active_route(tenant_id, route)
            raise RouteAlreadyActive(route.route_id, other.route_id if other else None)

        self.store.record_timeline_event(
            tenant_id,
            delivery.route_id,
            event_type="delivery_reopened",
            actor=actor,
            delivery_id=delivery_id,
            details={
                "previous_status": delivery.status.value,
                "previous_reason": delivery.failure_reason,
                "reason": reason,
            },
        )
        logger.warning(
            "Delivery reopened",
            tenant_id=tenant_id,
            delivery_id=delivery_id,
            previous_status=delivery.status.value,
            actor=actor,
        )
        return self._require_delivery(tenant_id, delivery_id)

    def import_route(self, tenant_id: str, request: RouteImportRequest, actor: str = "system") -> RouteRecord:
        """Create a PLANNED route with all deliveries, or nothing at all."""
        driver_id = request.driver_id
        if driver_id:
            if self.store.get_driver(tenant_id, driver_id) is None:
                raise ValueError(f"Driver {driver_id} not found")
        elif request.driver_phone:
            driver = self.store.find_driver_by_phones(phone_candidates(request.driver_phone), tenant_id=tenant_id)
            if driver is None:
                raise ValueError(f"No driver registered for phone {request.driver_phone}")
            driver_id = driver.driver_id

        customers = self.store.list_customers(tenant_id)
        by_tax_id = {c.tax_id: c for c in customers if c.tax_id}
        by_name: Dict[str, str] = {}
        for customer in customers:
            by_name.setdefault(customer.trade_name.strip().lower(), customer.customer_id)

        rows: List[dict] = []
        missing: List[str] = []
        for item in request.deliveries:
            customer_id = None
            if item.customer_tax_id and item.customer_tax_id in by_tax_id:
                customer_id = by_tax_id[item.customer_tax_id].customer_id
            elif item.customer_name:
                customer_id = by_name.get(item.customer_name.strip().lower())
            if customer_id is None:
                missing.append(item.invoice_number)
                continue
            row = item.model_dump(exclude={"customer_tax_id", "customer_name"})
            row["customer_id"] = customer_id
            rows.append(row)

        if missing:
            raise ValueError(f"Unknown customer for invoices: {', '.join(missing)}")

        route = self.store.insert_route(
            tenant_id,
            name=request.name,
            route_date=request.route_date,
            driver_id=driver_id,
            vehicle_id=request.vehicle_id,
            deliveries=rows,
        )
        self.store.record_timeline_event(
            tenant_id,
            route.route_id,
            event_type="route_imported",
            actor=actor,
            details={"deliveries": len(rows), "driver_id": driver_id},
        )
        logger.info("Route imported", tenant_id=tenant_id, route_id=route.route_id, deliveries=len(rows))
        return route


lifecycle_service = LifecycleService()
