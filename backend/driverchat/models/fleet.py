"""Domain models for routes, deliveries, drivers and shift journeys."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RouteStatus(str, Enum):
    """Lifecycle status for a driver's route."""

    PLANNED = "PLANNED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class DeliveryStatus(str, Enum):
    """Outcome status for a single delivery inside a route."""

    PENDING = "PENDING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    RETURNED = "RETURNED"


OPEN_DELIVERY_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.IN_TRANSIT)
RESOLVED_DELIVERY_STATUSES = (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


class WorkflowStep(str, Enum):
    """Observational markers stamped on a delivery while unloading."""

    ARRIVED = "arrived"
    UNLOADING_STARTED = "unloading_started"
    UNLOADING_ENDED = "unloading_ended"


class JourneyEventType(str, Enum):
    """Append-only shift and break markers."""

    JOURNEY_START = "JOURNEY_START"
    JOURNEY_END = "JOURNEY_END"
    MEAL_START = "MEAL_START"
    MEAL_END = "MEAL_END"
    WAIT_START = "WAIT_START"
    WAIT_END = "WAIT_END"
    REST_START = "REST_START"
    REST_END = "REST_END"


class OccurrenceType(str, Enum):
    """Incident categories a driver can report from the road."""

    ACCIDENT = "ACCIDENT"
    THEFT = "THEFT"
    BREAKDOWN = "BREAKDOWN"
    OTHER = "OTHER"


class MessagingProviderType(str, Enum):
    """Outbound chat transports a tenant can be configured with."""

    ZAPI = "zapi"
    SENDPULSE = "sendpulse"
    LOG = "log"


class TenantConfig(BaseModel):
    """Per-tenant messaging and reply settings."""

    messaging_provider: Optional[MessagingProviderType] = None
    zapi_instance_id: Optional[str] = None
    zapi_token: Optional[str] = None
    zapi_client_token: Optional[str] = None
    sendpulse_bot_id: Optional[str] = None
    supervisor_name: Optional[str] = None
    supervisor_phone: Optional[str] = None
    templates: Dict[str, str] = Field(default_factory=dict)


class TenantRecord(BaseModel):
    tenant_id: str
    name: str
    config: TenantConfig = Field(default_factory=TenantConfig)


class DriverRecord(BaseModel):
    """Persisted driver with its cached journey projection."""

    driver_id: str
    tenant_id: str
    name: str
    phone: str
    vehicle_id: Optional[str] = None
    current_journey_status: Optional[JourneyEventType] = None
    last_journey_event_at: Optional[datetime] = None


class CustomerRecord(BaseModel):
    customer_id: str
    tenant_id: str
    trade_name: str
    legal_name: Optional[str] = None
    tax_id: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class DeliveryRecord(BaseModel):
    """One invoice inside a route, joined with its customer."""

    delivery_id: str
    route_id: str
    customer_id: str
    position: int = 0
    invoice_number: str
    volume: float = 0.0
    weight: float = 0.0
    value: float = 0.0
    product: Optional[str] = None
    salesperson: Optional[str] = None
    salesperson_phone: Optional[str] = None
    priority: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    failure_reason: Optional[str] = None
    proof_of_delivery: Optional[str] = None
    arrived_at: Optional[datetime] = None
    unloading_started_at: Optional[datetime] = None
    unloading_ended_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)
    customer: Optional[CustomerRecord] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_DELIVERY_STATUSES

    @property
    def customer_name(self) -> str:
        return self.customer.trade_name if self.customer else ""


class RouteRecord(BaseModel):
    """A driver's set of deliveries for one calendar day."""

    route_id: str
    tenant_id: str
    name: str
    route_date: date
    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    status: RouteStatus = RouteStatus.PLANNED
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    deliveries: List[DeliveryRecord] = Field(default_factory=list)

    def open_deliveries(self) -> List[DeliveryRecord]:
        return [item for item in self.deliveries if item.is_open]

    def count_by_status(self, status: DeliveryStatus) -> int:
        return sum(1 for item in self.deliveries if item.status == status)


class JourneyEventRecord(BaseModel):
    """Immutable journey log entry."""

    event_id: str
    tenant_id: str
    driver_id: str
    type: JourneyEventType
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_address: Optional[str] = None
    notes: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class OccurrenceRecord(BaseModel):
    occurrence_id: str
    tenant_id: str
    driver_id: str
    route_id: Optional[str] = None
    type: OccurrenceType = OccurrenceType.OTHER
    description: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class TenantCreateRequest(BaseModel):
    tenant_id: Optional[str] = None
    name: str = Field(min_length=2)
    config: TenantConfig = Field(default_factory=TenantConfig)


class DriverCreateRequest(BaseModel):
    name: str = Field(min_length=3)
    phone: str = Field(min_length=8)
    vehicle_id: Optional[str] = None


class CustomerCreateRequest(BaseModel):
    trade_name: str = Field(min_length=2)
    legal_name: Optional[str] = None
    tax_id: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class RouteImportDelivery(BaseModel):
    """Delivery line of a route import; the customer must already exist."""

    invoice_number: str = Field(min_length=1)
    customer_tax_id: Optional[str] = None
    customer_name: Optional[str] = None
    volume: float = Field(default=0.0, ge=0)
    weight: float = Field(default=0.0, ge=0)
    value: float = Field(default=0.0, ge=0)
    product: Optional[str] = None
    salesperson: Optional[str] = None
    salesperson_phone: Optional[str] = None
    priority: Optional[str] = None


class RouteImportRequest(BaseModel):
    """Payload to create a fully populated route in one transaction."""

    name: str = Field(min_length=1)
    route_date: date
    driver_id: Optional[str] = None
    driver_phone: Optional[str] = None
    vehicle_id: Optional[str] = None
    deliveries: List[RouteImportDelivery] = Field(min_length=1)


class JourneyEventRequest(BaseModel):
    driver_id: str
    type: JourneyEventType
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    location_address: Optional[str] = None
    notes: Optional[str] = None


class DeliveryReopenRequest(BaseModel):
    """Back-office correction of a delivery recorded by mistake."""

    reason: str = Field(min_length=3)
