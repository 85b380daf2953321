"""Reply texts sent back to drivers; tenants may override any template."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from driverchat.core.config import get_settings
from driverchat.core.logging import logger
from driverchat.models.fleet import DeliveryRecord, TenantRecord


DEFAULT_TEMPLATES: Dict[str, str] = {
    "greeting": "{salutation}, {name}! {hint}",
    "help": (
        "I didn't get that. Try:\n"
        "- 'start' or 'start <route>'\n"
        "- 'delivered <invoice>' / 'failed <invoice> <reason>'\n"
        "- 'summary', 'list', 'next location'\n"
        "- 'lunch', 'back', 'finish'"
    ),
    "no_route_today": "{salutation}, {name}. You have no route scheduled for today.",
    "routes_finished": "All your routes for today are finished. Good job, {name}!",
    "choose_route": "You have more than one route today:\n{routes}\nReply with the route name, e.g. 'start {example}'.",
    "route_started": "Route {route} started with {count} deliveries. First stop: {next_stop}.",
    "route_already_active": "Route {route} is already active.",
    "route_not_started": "Route {route} has not started yet. Send 'start' first.",
    "delivery_not_found": "I couldn't find '{identifier}' on route {route}.",
    "identifier_needed": "Which delivery? Send the invoice number or customer name.",
    "choose_delivery": "More than one delivery matches '{identifier}':\n{items}\nSend the invoice number.",
    "route_not_active": "No route is active right now.",
    "delivered": "Delivery {invoice} ({customer}) confirmed. {remaining} left.",
    "failed": "Failure recorded for {invoice} ({customer}): {reason}. {remaining} left.",
    "already_recorded": "Invoice {invoice} was already recorded as {state}.",
    "route_completed": "All deliveries done! Route {route} completed.",
    "workflow_arrived": "Arrival at {customer} ({invoice}) noted.",
    "workflow_unloading_started": "Unloading started at {customer} ({invoice}).",
    "workflow_unloading_ended": "Unloading finished at {customer} ({invoice}).",
    "no_open_delivery": "There are no open deliveries on route {route}.",
    "summary": "Route {route} ({state}): {delivered} delivered, {failed} failed, {open} open.",
    "list_pending": "Open deliveries on {route}:\n{items}",
    "delay": "Delay noted{reason}. The base has been informed.",
    "navigate": "Next stop: {customer}, {address}.",
    "contact": "{customer}: {phone}",
    "contact_missing": "No phone on file for {customer}.",
    "salesperson": "Salesperson for invoice {invoice}: {salesperson} {phone}",
    "salesperson_missing": "No salesperson on file for invoice {invoice}.",
    "supervisor": "Supervisor {name}: {phone}",
    "supervisor_missing": "No supervisor contact is configured.",
    "details": (
        "Invoice {invoice} - {customer}\n"
        "Volume: {volume} | Weight: {weight} kg | Value: {value}\n"
        "Product: {product}\n"
        "Salesperson: {salesperson}"
    ),
    "incident": "Incident recorded ({type}). The base has been notified. Stay safe.",
    "exited": "You left route {route}. It is back to planned.",
    "exit_blocked": "Route {route} already has processed deliveries, it cannot be reverted.",
    "finish_blocked": "Route {route} still has {count} open deliveries.",
    "finished": "Route {route} finished. Thanks, {name}!",
    "undo": "Your correction request for invoice {invoice} was sent to the back office.",
    "undo_nothing": "There is nothing to correct on route {route} yet.",
    "break_started": "{label} started. Send 'back' when you resume.",
    "break_ended": "Welcome back! {label} finished.",
    "no_break_open": "You are not on a break.",
    "journey_refused": "{reason}",
    "location_received": "Location received, thanks!",
    "other": "I'm here for your deliveries. Send 'help' to see what I can do.",
    "error": "Sorry, something went wrong. Please try again in a moment.",
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def salutation(now: Optional[datetime] = None) -> str:
    hour = (now or get_settings().local_now()).hour
    if hour < 12:
        return "Good morning"
    if hour < 18:
        return "Good afternoon"
    return "Good evening"


def render(key: str, tenant: Optional[TenantRecord] = None, **values: Any) -> str:
    """Fill a reply template; a broken tenant override falls back to the default text."""
    fields = _Blank({k: "" if v is None else v for k, v in values.items()})
    override = tenant.config.templates.get(key) if tenant is not None else None
    if override:
        try:
            return override.format_map(fields)
        except (ValueError, IndexError, KeyError, AttributeError, TypeError) as exc:
            logger.warning(
                "Tenant reply template is malformed, using default",
                tenant_id=tenant.tenant_id,
                template=key,
                error=str(exc),
            )
    return DEFAULT_TEMPLATES[key].format_map(fields)


def first_name(name: str) -> str:
    return (name or "").split(" ")[0] if name else ""


def delivery_line(position: int, delivery: DeliveryRecord) -> str:
    return f"{position}. {delivery.invoice_number} - {delivery.customer_name or delivery.customer_id}"


def numbered(deliveries: Iterable[DeliveryRecord]) -> str:
    return "\n".join(delivery_line(index, item) for index, item in enumerate(deliveries, start=1))


def money(value: float) -> str:
    return f"{value:,.2f}"
