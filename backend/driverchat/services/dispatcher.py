"""Per-message orchestration: identity, routes, intent, transition, reply."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from driverchat.core.config import Settings, get_settings
from driverchat.core.logging import logger
from driverchat.models.fleet import (
    DeliveryRecord,
    DeliveryStatus,
    DriverRecord,
    JourneyEventType,
    OccurrenceType,
    RESOLVED_DELIVERY_STATUSES,
    RouteRecord,
    RouteStatus,
    TenantRecord,
    WorkflowStep,
)
from driverchat.models.messaging import DispatchOutcome, InboundMessage, Intent, IntentAction, MessageKind
from driverchat.services import replies
from driverchat.services.fleet_state import FleetStateStore, fleet_state_store
from driverchat.services.intent_classifier import IntentClassifier, build_intent_classifier
from driverchat.services.journey import (
    BREAK_LABELS,
    BREAK_PAIRS,
    InvalidJourneyTransition,
    JourneyService,
    is_off_journey,
    open_break,
)
from driverchat.services.learning_sink import LearningSink
from driverchat.services.lifecycle import (
    InvalidRouteState,
    LifecycleService,
    RouteAlreadyActive,
    RouteTransitionBlocked,
)
from driverchat.services.messaging import MessagingGateway, messaging_gateway
from driverchat.services.phone_identity import DriverNotFound, PhoneIdentityResolver, digits_only


RESOLUTION_EVENTS = {"delivery_delivered", "delivery_failed"}


@dataclass
class Conversation:
    """State shared by the handlers of one inbound message."""

    message: InboundMessage
    driver: DriverRecord
    tenant: TenantRecord
    reply_phone: str
    intent: Intent
    actor: str


WORKFLOW_STEPS = {
    IntentAction.ARRIVED: WorkflowStep.ARRIVED,
    IntentAction.UNLOADING_STARTED: WorkflowStep.UNLOADING_STARTED,
    IntentAction.UNLOADING_ENDED: WorkflowStep.UNLOADING_ENDED,
}

BREAK_REASONS = [
    (JourneyEventType.WAIT_START, re.compile(r"\b(wait\w*|queue|line|fila|aguard\w*|esper\w*)\b", re.IGNORECASE)),
    (JourneyEventType.REST_START, re.compile(r"\b(rest\w*|sleep\w*|nap|descans\w*|dormir|repouso)\b", re.IGNORECASE)),
]

INCIDENT_REASONS = [
    (OccurrenceType.THEFT, re.compile(r"\b(rob\w*|stole\w*|theft|assalt\w*|roub\w*|furt\w*)\b", re.IGNORECASE)),
    (OccurrenceType.ACCIDENT, re.compile(r"\b(accident|crash\w*|collid\w*|hit|acidente|bati\w*|colis\w*)\b", re.IGNORECASE)),
    (
        OccurrenceType.BREAKDOWN,
        re.compile(r"\b(flat|tire|tyre|broke\w*|engine|pneu|quebr\w*|motor|pane)\b", re.IGNORECASE),
    ),
]


def break_type_for(reason: Optional[str]) -> JourneyEventType:
    text = reason or ""
    for event_type, pattern in BREAK_REASONS:
        if pattern.search(text):
            return event_type
    return JourneyEventType.MEAL_START


def occurrence_type_for(reason: Optional[str]) -> OccurrenceType:
    text = reason or ""
    for occurrence_type, pattern in INCIDENT_REASONS:
        if pattern.search(text):
            return occurrence_type
    return OccurrenceType.OTHER


def match_deliveries(deliveries: List[DeliveryRecord], identifier: str) -> List[DeliveryRecord]:
    """Exact invoice/customer matches first, substring matches as fallback."""
    needle = identifier.strip().lower()
    if not needle:
        return []
    exact = [
        item
        for item in deliveries
        if item.invoice_number.strip().lower() == needle or item.customer_name.strip().lower() == needle
    ]
    if exact:
        return exact
    return [
        item
        for item in deliveries
        if needle in item.invoice_number.strip().lower() or needle in item.customer_name.strip().lower()
    ]


def next_open_delivery(route: RouteRecord) -> Optional[DeliveryRecord]:
    open_items = route.open_deliveries()
    return open_items[0] if open_items else None


class CommandDispatcher:
    """Handles one inbound driver message end to end.

    Identity misses end silently. Every other path sends exactly one reply to
    the number the message came from. Errors raised anywhere below are caught
    here and turned into an ``error`` outcome.
    """

    def __init__(
        self,
        store: FleetStateStore | None = None,
        classifier: IntentClassifier | None = None,
        gateway: MessagingGateway | None = None,
        resolver: PhoneIdentityResolver | None = None,
        lifecycle: LifecycleService | None = None,
        journey: JourneyService | None = None,
        learning: LearningSink | None = None,
        settings: Settings | None = None,
    ):
        self.store = store or fleet_state_store
        self._classifier = classifier
        self.gateway = gateway or messaging_gateway
        self.resolver = resolver or PhoneIdentityResolver(self.store)
        self.lifecycle = lifecycle or LifecycleService(self.store)
        self.journey = journey or JourneyService(self.store)
        self.learning = learning or LearningSink(self.store)
        self._settings = settings

        self._handlers: Dict[IntentAction, Callable[[Conversation, RouteRecord, List[RouteRecord]], Awaitable[DispatchOutcome]]] = {
            IntentAction.START_SHIFT: self._start_route,
            IntentAction.EXIT_ROUTE: self._exit_route,
            IntentAction.DELIVER: self._resolve_delivery,
            IntentAction.FAIL: self._resolve_delivery,
            IntentAction.ARRIVED: self._workflow_step,
            IntentAction.UNLOADING_STARTED: self._workflow_step,
            IntentAction.UNLOADING_ENDED: self._workflow_step,
            IntentAction.SUMMARY: self._summary,
            IntentAction.LIST_PENDING: self._list_pending,
            IntentAction.DETAILS: self._details,
            IntentAction.NAVIGATE: self._navigate,
            IntentAction.CONTACT: self._contact,
            IntentAction.ASK_SALESPERSON: self._salesperson,
            IntentAction.DELAY: self._delay,
            IntentAction.INCIDENT: self._incident,
            IntentAction.FINISH: self._finish,
            IntentAction.UNDO: self._undo,
        }

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def classifier(self) -> IntentClassifier:
        if self._classifier is None:
            self._classifier = build_intent_classifier(self.settings)
        return self._classifier

    # -- entry point ------------------------------------------------------------

    async def handle(self, message: InboundMessage) -> DispatchOutcome:
        conversation: Optional[Conversation] = None
        try:
            if not digits_only(message.raw_phone):
                return DispatchOutcome(status="ignored")

            try:
                driver = self.resolver.resolve(message.raw_phone, tenant_id=message.tenant_id)
            except DriverNotFound:
                return DispatchOutcome(status="driver_not_found")

            conversation = Conversation(
                message=message,
                driver=driver,
                tenant=self.store.get_tenant(driver.tenant_id),
                reply_phone=digits_only(message.raw_phone),
                intent=Intent.unknown(),
                actor=f"driver:{driver.driver_id}",
            )
            return await self._process(conversation)
        except Exception as exc:
            logger.error(
                "Inbound message processing failed",
                error=str(exc),
                provider=message.provider,
                driver_id=conversation.driver.driver_id if conversation else None,
            )
            if conversation is None:
                return DispatchOutcome(status="error")
            try:
                return await self._reply(conversation, "error", status="error")
            except Exception as reply_exc:
                logger.error("Error reply failed", error=str(reply_exc))
                return DispatchOutcome(status="error", driver_id=conversation.driver.driver_id)

    async def _process(self, conv: Conversation) -> DispatchOutcome:
        message = conv.message
        driver = conv.driver

        if message.kind == MessageKind.LOCATION:
            return await self._reply(conv, "location_received", status="location_updated")

        today = self.settings.local_today()
        routes = self.store.list_routes(
            driver.tenant_id,
            driver_id=driver.driver_id,
            route_date=today,
            statuses=[RouteStatus.PLANNED, RouteStatus.ACTIVE],
        )
        if not routes:
            finished = self.store.list_routes(
                driver.tenant_id,
                driver_id=driver.driver_id,
                route_date=today,
                statuses=[RouteStatus.COMPLETED],
            )
            if finished:
                return await self._reply(conv, "routes_finished", status="routes_finished", name=driver.name)
            return await self._reply(
                conv,
                "no_route_today",
                status="no_active_route",
                salutation=replies.salutation(),
                name=driver.name,
            )

        conv.intent = await self._classify(conv)
        action = conv.intent.action
        logger.info("Dispatching intent", driver_id=driver.driver_id, action=action.value)

        if action == IntentAction.UNKNOWN:
            self.learning.record(driver.tenant_id, self._phrase(message), driver.driver_id)
            return await self._reply(conv, "help", status="learning_queued")
        if action == IntentAction.HELP:
            return await self._reply(conv, "help", status="help_sent")
        if action == IntentAction.OTHER:
            return await self._reply(conv, "other", status="processed")
        if action == IntentAction.GREETING:
            active = next((r for r in routes if r.status == RouteStatus.ACTIVE), None)
            hint = f"Route: {active.name}" if active else "Routes today: " + ", ".join(r.name for r in routes)
            return await self._reply(
                conv,
                "greeting",
                status="greeting_sent",
                salutation=replies.salutation(),
                name=replies.first_name(driver.name),
                hint=hint,
            )
        if action == IntentAction.PAUSE_BREAK:
            return await self._pause(conv)
        if action == IntentAction.RESUME:
            return await self._resume(conv)
        if action == IntentAction.ASK_SUPERVISOR:
            return await self._supervisor(conv)

        route = self._select_route(routes, conv.intent)
        if route is None:
            listing = "\n".join(f"- {item.name}" for item in routes)
            logger.info("Route ambiguous", driver_id=driver.driver_id, identifier=conv.intent.identifier)
            return await self._reply(
                conv,
                "choose_route",
                status="route_ambiguous",
                routes=listing,
                example=routes[0].name.lower(),
            )

        handler = self._handlers.get(action)
        if handler is None:
            return await self._reply(conv, "other", status="processed", route_id=route.route_id)
        return await handler(conv, route, routes)

    # -- helpers ----------------------------------------------------------------

    @staticmethod
    def _phrase(message: InboundMessage) -> Optional[str]:
        if message.text:
            return message.text
        if message.caption:
            return message.caption
        if message.media_url:
            return f"[{message.kind.value.lower()}] {message.media_url}"
        return None

    async def _classify(self, conv: Conversation) -> Intent:
        message = conv.message
        text = message.text if message.kind == MessageKind.TEXT else message.caption
        image_url = message.media_url if message.kind == MessageKind.IMAGE else None
        audio_url = message.media_url if message.kind == MessageKind.AUDIO else None
        try:
            return await asyncio.wait_for(
                self.classifier.classify(
                    conv.driver.tenant_id,
                    conv.driver.driver_id,
                    text=text,
                    image_url=image_url,
                    audio_url=audio_url,
                ),
                timeout=self.settings.classifier_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Intent classifier timed out", driver_id=conv.driver.driver_id)
        except Exception as exc:
            logger.warning("Intent classifier unavailable", driver_id=conv.driver.driver_id, error=str(exc))
        return Intent.unknown()

    @staticmethod
    def _select_route(routes: List[RouteRecord], intent: Intent) -> Optional[RouteRecord]:
        active = next((item for item in routes if item.status == RouteStatus.ACTIVE), None)
        if active is not None:
            return active
        planned = [item for item in routes if item.status == RouteStatus.PLANNED]
        if len(planned) == 1:
            return planned[0]
        needle = (intent.identifier or "").strip().lower()
        if not needle:
            return None
        matches = [item for item in planned if needle in item.name.lower()]
        return matches[0] if len(matches) == 1 else None

    async def _send_text(self, conv: Conversation, text: str) -> bool:
        try:
            return await asyncio.wait_for(
                self.gateway.send_text(conv.tenant, conv.reply_phone, text),
                timeout=self.settings.outbound_timeout_seconds * 2,
            )
        except asyncio.TimeoutError:
            logger.warning("Reply send timed out", driver_id=conv.driver.driver_id)
            return False

    async def _reply(
        self,
        conv: Conversation,
        template: str,
        status: str,
        route_id: Optional[str] = None,
        delivery_id: Optional[str] = None,
        **values,
    ) -> DispatchOutcome:
        text = replies.render(template, conv.tenant, **values)
        sent = await self._send_text(conv, text)
        return DispatchOutcome(
            status=status,
            reply=text,
            action=conv.intent.action,
            driver_id=conv.driver.driver_id,
            route_id=route_id,
            delivery_id=delivery_id,
            reply_sent=sent,
        )

    async def _target_delivery(
        self,
        conv: Conversation,
        route: RouteRecord,
        candidates: List[DeliveryRecord],
        default_next: bool,
    ) -> Tuple[Optional[DeliveryRecord], Optional[DispatchOutcome]]:
        """Pick the delivery an intent refers to, or the outcome to reply with instead."""
        identifier = (conv.intent.identifier or "").strip()
        if not identifier:
            if default_next:
                delivery = next_open_delivery(route)
                if delivery is not None:
                    return delivery, None
                outcome = await self._reply(
                    conv, "no_open_delivery", status="no_active_delivery", route_id=route.route_id, route=route.name
                )
                return None, outcome
            outcome = await self._reply(conv, "identifier_needed", status="identifier_needed", route_id=route.route_id)
            return None, outcome

        matches = match_deliveries(candidates, identifier)
        if len(matches) > 1:
            open_matches = [item for item in matches if item.is_open]
            if len(open_matches) == 1:
                matches = open_matches
        if not matches:
            outcome = await self._reply(
                conv,
                "delivery_not_found",
                status="not_found",
                route_id=route.route_id,
                identifier=identifier,
                route=route.name,
            )
            return None, outcome
        if len(matches) > 1:
            outcome = await self._reply(
                conv,
                "choose_delivery",
                status="delivery_ambiguous",
                route_id=route.route_id,
                identifier=identifier,
                items=replies.numbered(matches),
            )
            return None, outcome
        return matches[0], None

    # -- route lifecycle ----------------------------------------------------------

    async def _start_route(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        tenant_id = conv.driver.tenant_id
        if route.status == RouteStatus.ACTIVE:
            return await self._reply(
                conv, "route_already_active", status="already_started", route_id=route.route_id, route=route.name
            )
        try:
            started = self.lifecycle.start_route(tenant_id, route.route_id, actor=conv.actor)
        except RouteAlreadyActive:
            return await self._reply(
                conv, "route_already_active", status="already_started", route_id=route.route_id, route=route.name
            )

        driver = self.store.get_driver(tenant_id, conv.driver.driver_id) or conv.driver
        if is_off_journey(driver.current_journey_status):
            try:
                self.journey.record_event(tenant_id, driver.driver_id, JourneyEventType.JOURNEY_START)
            except InvalidJourneyTransition as exc:
                logger.info("Journey not opened with route start", driver_id=driver.driver_id, reason=exc.reason)

        first = next_open_delivery(started)
        return await self._reply(
            conv,
            "route_started",
            status="route_started",
            route_id=started.route_id,
            route=started.name,
            count=len(started.deliveries),
            next_stop=first.customer_name if first else "-",
        )

    async def _exit_route(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        if route.status != RouteStatus.ACTIVE:
            return await self._reply(conv, "route_not_active", status="no_active_route", route_id=route.route_id)
        try:
            self.lifecycle.exit_route(conv.driver.tenant_id, route.route_id, actor=conv.actor)
        except RouteTransitionBlocked:
            return await self._reply(
                conv, "exit_blocked", status="exit_blocked", route_id=route.route_id, route=route.name
            )
        return await self._reply(conv, "exited", status="route_exited", route_id=route.route_id, route=route.name)

    async def _resolve_delivery(
        self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]
    ) -> DispatchOutcome:
        intent = conv.intent
        if intent.identifier:
            delivery, outcome = await self._target_delivery(conv, route, route.deliveries, default_next=False)
        else:
            open_items = route.open_deliveries()
            if len(open_items) == 1:
                delivery, outcome = open_items[0], None
            else:
                delivery, outcome = await self._target_delivery(conv, route, route.deliveries, default_next=False)
        if outcome is not None:
            return outcome

        if route.status != RouteStatus.ACTIVE:
            return await self._reply(
                conv,
                "route_not_started",
                status="route_not_started",
                route_id=route.route_id,
                delivery_id=delivery.delivery_id,
                route=route.name,
            )

        outcome_status = DeliveryStatus.DELIVERED if intent.action == IntentAction.DELIVER else DeliveryStatus.FAILED
        reason = intent.reason if outcome_status == DeliveryStatus.FAILED else None
        if outcome_status == DeliveryStatus.FAILED and not reason:
            reason = "not informed"
        proof = conv.message.media_url if conv.message.kind == MessageKind.IMAGE else None

        result = self.lifecycle.resolve_delivery(
            conv.driver.tenant_id,
            delivery.delivery_id,
            outcome_status,
            reason=reason,
            proof_ref=proof,
            actor=conv.actor,
        )
        common = {"route_id": route.route_id, "delivery_id": delivery.delivery_id}
        if not result.applied:
            return await self._reply(
                conv,
                "already_recorded",
                status="already_done",
                invoice=delivery.invoice_number,
                state=result.delivery.status.value.lower().replace("_", " "),
                **common,
            )
        if result.route_completed:
            return await self._reply(conv, "route_completed", status="success", route=route.name, **common)

        remaining = self.store.count_open_deliveries(conv.driver.tenant_id, route.route_id)
        return await self._reply(
            conv,
            "delivered" if outcome_status == DeliveryStatus.DELIVERED else "failed",
            status="success",
            invoice=delivery.invoice_number,
            customer=delivery.customer_name,
            reason=reason,
            remaining=remaining,
            **common,
        )

    async def _workflow_step(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        step = WORKFLOW_STEPS[conv.intent.action]
        delivery, outcome = await self._target_delivery(conv, route, route.deliveries, default_next=True)
        if outcome is not None:
            return outcome
        self.lifecycle.record_workflow_step(conv.driver.tenant_id, delivery.delivery_id, step, actor=conv.actor)
        return await self._reply(
            conv,
            f"workflow_{step.value}",
            status="workflow_updated",
            route_id=route.route_id,
            delivery_id=delivery.delivery_id,
            customer=delivery.customer_name,
            invoice=delivery.invoice_number,
        )

    async def _finish(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        try:
            result = self.lifecycle.finish_route(conv.driver.tenant_id, route.route_id, actor=conv.actor)
        except InvalidRouteState:
            return await self._reply(
                conv, "route_not_started", status="route_not_started", route_id=route.route_id, route=route.name
            )
        except RouteTransitionBlocked as exc:
            return await self._reply(
                conv,
                "finish_blocked",
                status="finish_blocked",
                route_id=route.route_id,
                route=route.name,
                count=exc.outstanding,
            )
        return await self._reply(
            conv,
            "finished",
            status="route_finished" if result.applied else "already_finished",
            route_id=route.route_id,
            route=route.name,
            name=replies.first_name(conv.driver.name),
        )

    def _last_resolved(self, tenant_id: str, route_id: str, resolved: List[DeliveryRecord]) -> DeliveryRecord:
        by_id = {item.delivery_id: item for item in resolved}
        for event in self.store.list_timeline(tenant_id, route_id):
            if event["event_type"] in RESOLUTION_EVENTS and event["delivery_id"] in by_id:
                return by_id[event["delivery_id"]]
        return max(resolved, key=lambda item: item.updated_at)

    async def _undo(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        resolved = [item for item in route.deliveries if item.status in RESOLVED_DELIVERY_STATUSES]
        if conv.intent.identifier:
            resolved = match_deliveries(resolved, conv.intent.identifier)
        if not resolved:
            return await self._reply(
                conv, "undo_nothing", status="nothing_to_correct", route_id=route.route_id, route=route.name
            )
        latest = self._last_resolved(conv.driver.tenant_id, route.route_id, resolved)
        self.store.record_timeline_event(
            conv.driver.tenant_id,
            route.route_id,
            event_type="correction_requested",
            actor=conv.actor,
            delivery_id=latest.delivery_id,
            details={
                "current_status": latest.status.value,
                "message": conv.message.text or conv.message.caption,
            },
        )
        logger.info("Correction requested", driver_id=conv.driver.driver_id, delivery_id=latest.delivery_id)
        return await self._reply(
            conv,
            "undo",
            status="correction_requested",
            route_id=route.route_id,
            delivery_id=latest.delivery_id,
            invoice=latest.invoice_number,
        )

    # -- informational ------------------------------------------------------------

    async def _summary(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        return await self._reply(
            conv,
            "summary",
            status="summary_sent",
            route_id=route.route_id,
            route=route.name,
            state=route.status.value.lower(),
            delivered=route.count_by_status(DeliveryStatus.DELIVERED),
            failed=route.count_by_status(DeliveryStatus.FAILED),
            open=len(route.open_deliveries()),
        )

    async def _list_pending(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        open_items = route.open_deliveries()
        if not open_items:
            return await self._reply(
                conv, "no_open_delivery", status="no_active_delivery", route_id=route.route_id, route=route.name
            )
        return await self._reply(
            conv,
            "list_pending",
            status="list_sent",
            route_id=route.route_id,
            route=route.name,
            items=replies.numbered(open_items),
        )

    async def _details(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        delivery, outcome = await self._target_delivery(conv, route, route.deliveries, default_next=True)
        if outcome is not None:
            return outcome
        return await self._reply(
            conv,
            "details",
            status="details_sent",
            route_id=route.route_id,
            delivery_id=delivery.delivery_id,
            invoice=delivery.invoice_number,
            customer=delivery.customer_name,
            volume=delivery.volume,
            weight=delivery.weight,
            value=replies.money(delivery.value),
            product=delivery.product or "-",
            salesperson=delivery.salesperson or "-",
        )

    async def _navigate(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        delivery, outcome = await self._target_delivery(conv, route, route.deliveries, default_next=True)
        if outcome is not None:
            return outcome
        customer = delivery.customer
        if customer is not None and customer.latitude is not None and customer.longitude is not None:
            try:
                await asyncio.wait_for(
                    self.gateway.send_location(
                        conv.tenant,
                        conv.reply_phone,
                        customer.latitude,
                        customer.longitude,
                        title=customer.trade_name,
                        address=customer.address,
                    ),
                    timeout=self.settings.outbound_timeout_seconds * 2,
                )
            except asyncio.TimeoutError:
                logger.warning("Location send timed out", driver_id=conv.driver.driver_id)
        return await self._reply(
            conv,
            "navigate",
            status="navigation_sent",
            route_id=route.route_id,
            delivery_id=delivery.delivery_id,
            customer=delivery.customer_name,
            address=(customer.address if customer else None) or "address not on file",
        )

    async def _contact(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        delivery, outcome = await self._target_delivery(conv, route, route.deliveries, default_next=True)
        if outcome is not None:
            return outcome
        phone = delivery.customer.phone if delivery.customer else None
        common = {"route_id": route.route_id, "delivery_id": delivery.delivery_id, "customer": delivery.customer_name}
        if not phone:
            return await self._reply(conv, "contact_missing", status="not_found", **common)
        return await self._reply(conv, "contact", status="contact_sent", phone=phone, **common)

    async def _salesperson(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        delivery, outcome = await self._target_delivery(conv, route, route.deliveries, default_next=True)
        if outcome is not None:
            return outcome
        common = {"route_id": route.route_id, "delivery_id": delivery.delivery_id, "invoice": delivery.invoice_number}
        if not delivery.salesperson:
            return await self._reply(conv, "salesperson_missing", status="not_found", **common)
        return await self._reply(
            conv,
            "salesperson",
            status="contact_sent",
            salesperson=delivery.salesperson,
            phone=delivery.salesperson_phone or "",
            **common,
        )

    async def _supervisor(self, conv: Conversation) -> DispatchOutcome:
        config = conv.tenant.config
        if not config.supervisor_phone:
            return await self._reply(conv, "supervisor_missing", status="not_found")
        return await self._reply(
            conv,
            "supervisor",
            status="contact_sent",
            name=config.supervisor_name or "",
            phone=config.supervisor_phone,
        )

    async def _delay(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        reason = conv.intent.reason
        self.store.record_timeline_event(
            conv.driver.tenant_id,
            route.route_id,
            event_type="delay_reported",
            actor=conv.actor,
            details={"reason": reason},
        )
        return await self._reply(
            conv,
            "delay",
            status="delay_reported",
            route_id=route.route_id,
            reason=f" ({reason})" if reason else "",
        )

    async def _incident(self, conv: Conversation, route: RouteRecord, routes: List[RouteRecord]) -> DispatchOutcome:
        description = conv.intent.reason or conv.message.text or conv.message.caption or "Incident reported by driver"
        occurrence = self.store.add_occurrence(
            conv.driver.tenant_id,
            driver_id=conv.driver.driver_id,
            route_id=route.route_id,
            occurrence_type=occurrence_type_for(description),
            description=description,
        )
        self.store.record_timeline_event(
            conv.driver.tenant_id,
            route.route_id,
            event_type="incident_reported",
            actor=conv.actor,
            details={"occurrence_id": occurrence.occurrence_id, "type": occurrence.type.value},
        )
        logger.warning(
            "Incident reported",
            driver_id=conv.driver.driver_id,
            route_id=route.route_id,
            occurrence_type=occurrence.type.value,
        )
        return await self._reply(
            conv,
            "incident",
            status="incident_recorded",
            route_id=route.route_id,
            type=occurrence.type.value.lower(),
        )

    # -- journey ------------------------------------------------------------------

    async def _pause(self, conv: Conversation) -> DispatchOutcome:
        event_type = break_type_for(conv.intent.reason or conv.message.text)
        try:
            self.journey.record_event(conv.driver.tenant_id, conv.driver.driver_id, event_type, notes=conv.intent.reason)
        except InvalidJourneyTransition as exc:
            return await self._reply(conv, "journey_refused", status="journey_refused", reason=exc.reason)
        return await self._reply(
            conv,
            "break_started",
            status="break_started",
            label=BREAK_LABELS[event_type].capitalize(),
        )

    async def _resume(self, conv: Conversation) -> DispatchOutcome:
        driver = self.store.get_driver(conv.driver.tenant_id, conv.driver.driver_id) or conv.driver
        current = open_break(driver.current_journey_status)
        if current is None:
            return await self._reply(conv, "no_break_open", status="journey_refused")
        try:
            self.journey.record_event(conv.driver.tenant_id, driver.driver_id, BREAK_PAIRS[current])
        except InvalidJourneyTransition as exc:
            return await self._reply(conv, "journey_refused", status="journey_refused", reason=exc.reason)
        return await self._reply(
            conv,
            "break_ended",
            status="break_ended",
            label=BREAK_LABELS[current].capitalize(),
        )


command_dispatcher = CommandDispatcher()
