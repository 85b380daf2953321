"""Driver shift and break tracking, independent of route progress."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import List, Optional

from driverchat.core.config import get_settings
from driverchat.core.logging import logger
from driverchat.models.fleet import DriverRecord, JourneyEventRecord, JourneyEventType
from driverchat.services.fleet_state import FleetStateStore, fleet_state_store


BREAK_PAIRS = {
    JourneyEventType.MEAL_START: JourneyEventType.MEAL_END,
    JourneyEventType.WAIT_START: JourneyEventType.WAIT_END,
    JourneyEventType.REST_START: JourneyEventType.REST_END,
}
BREAK_LABELS = {
    JourneyEventType.MEAL_START: "meal break",
    JourneyEventType.WAIT_START: "wait break",
    JourneyEventType.REST_START: "rest break",
}
_BREAK_ENDS = {end: start for start, end in BREAK_PAIRS.items()}


class InvalidJourneyTransition(Exception):
    """Rejected journey event; ``reason`` is suitable for replying to the driver."""

    def __init__(self, reason: str, current: Optional[JourneyEventType] = None, requested: Optional[JourneyEventType] = None):
        super().__init__(reason)
        self.reason = reason
        self.current = current
        self.requested = requested


def is_off_journey(status: Optional[JourneyEventType]) -> bool:
    return status is None or status == JourneyEventType.JOURNEY_END


def open_break(status: Optional[JourneyEventType]) -> Optional[JourneyEventType]:
    return status if status in BREAK_PAIRS else None


def next_status(current: Optional[JourneyEventType], requested: JourneyEventType) -> JourneyEventType:
    """Validate ``requested`` against ``current`` and return the new cached status."""
    requested = JourneyEventType(requested)

    if requested == JourneyEventType.JOURNEY_START:
        if not is_off_journey(current):
            raise InvalidJourneyTransition("Your journey is already started.", current, requested)
        return JourneyEventType.JOURNEY_START

    if is_off_journey(current):
        raise InvalidJourneyTransition("You need to start your journey first.", current, requested)

    if requested in BREAK_PAIRS:
        if current != JourneyEventType.JOURNEY_START:
            raise InvalidJourneyTransition(
                f"You already have a {BREAK_LABELS[current]} open. End it before starting another.",
                current,
                requested,
            )
        return requested

    if requested in _BREAK_ENDS:
        expected = _BREAK_ENDS[requested]
        if current != expected:
            if current in BREAK_PAIRS:
                message = f"You are on a {BREAK_LABELS[current]}, not a {BREAK_LABELS[expected]}."
            else:
                message = f"There is no {BREAK_LABELS[expected]} open."
            raise InvalidJourneyTransition(message, current, requested)
        return JourneyEventType.JOURNEY_START

    if requested == JourneyEventType.JOURNEY_END:
        if current in BREAK_PAIRS:
            raise InvalidJourneyTransition(
                f"End your {BREAK_LABELS[current]} before ending the journey.",
                current,
                requested,
            )
        return JourneyEventType.JOURNEY_END

    raise InvalidJourneyTransition(f"Unsupported journey event {requested.value}.", current, requested)


class JourneyService:
    """Append journey events and keep the driver's cached status in step."""

    MAX_ATTEMPTS = 3

    def __init__(self, store: FleetStateStore | None = None):
        self.store = store or fleet_state_store

    def _require_driver(self, tenant_id: str, driver_id: str) -> DriverRecord:
        driver = self.store.get_driver(tenant_id, driver_id)
        if driver is None:
            raise KeyError(driver_id)
        return driver

    def record_event(
        self,
        tenant_id: str,
        driver_id: str,
        event_type: JourneyEventType,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        location_address: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> JourneyEventRecord:
        event_type = JourneyEventType(event_type)
        for _ in range(self.MAX_ATTEMPTS):
            driver = self._require_driver(tenant_id, driver_id)
            current = driver.current_journey_status
            target = next_status(current, event_type)
            event = self.store.append_journey_event(
                tenant_id,
                driver_id,
                event_type=event_type,
                expected_status=current,
                next_status=target,
                latitude=latitude,
                longitude=longitude,
                location_address=location_address,
                notes=notes,
            )
            if event is not None:
                logger.info(
                    "Journey event recorded",
                    tenant_id=tenant_id,
                    driver_id=driver_id,
                    event_type=event_type.value,
                    status=target.value,
                )
                return event
            logger.info("Journey status changed concurrently, re-validating", driver_id=driver_id)

        raise InvalidJourneyTransition("Your journey changed while this message was processed. Try again.")

    def history(self, tenant_id: str, driver_id: str, day: Optional[date] = None) -> List[JourneyEventRecord]:
        """Events for one local calendar day, most recent first."""
        self._require_driver(tenant_id, driver_id)
        settings = get_settings()
        day = day or settings.local_today()
        start = datetime.combine(day, time.min, tzinfo=settings.tzinfo())
        return self.store.list_journey_events(
            tenant_id,
            driver_id,
            since=start,
            until=start + timedelta(days=1),
        )


journey_service = JourneyService()
