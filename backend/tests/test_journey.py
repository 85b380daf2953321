from __future__ import annotations

import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_fleet"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["FLEET_DB_PATH"] = str(TMP / "fleet_state.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["DEFAULT_MESSAGING_PROVIDER"] = "log"
os.environ["WEBHOOK_CLIENT_TOKEN"] = "test-webhook-token"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from driverchat.core.config import get_settings  # noqa: E402
from driverchat.models.fleet import JourneyEventType  # noqa: E402
from driverchat.services.fleet_state import FleetStateStore  # noqa: E402
from driverchat.services.journey import (  # noqa: E402
    InvalidJourneyTransition,
    JourneyService,
    is_off_journey,
    next_status,
)


TENANT = "journey_tests"
E = JourneyEventType


@pytest.fixture
def store(tmp_path):
    return FleetStateStore(db_path=str(tmp_path / "journey.db"))


@pytest.fixture
def service(store):
    return JourneyService(store)


@pytest.fixture
def driver(store):
    return store.create_driver(TENANT, name="Carlos Souza", phone="11999998888")


@pytest.mark.parametrize(
    "current, requested, expected",
    [
        (None, E.JOURNEY_START, E.JOURNEY_START),
        (E.JOURNEY_END, E.JOURNEY_START, E.JOURNEY_START),
        (E.JOURNEY_START, E.MEAL_START, E.MEAL_START),
        (E.MEAL_START, E.MEAL_END, E.JOURNEY_START),
        (E.WAIT_START, E.WAIT_END, E.JOURNEY_START),
        (E.JOURNEY_START, E.JOURNEY_END, E.JOURNEY_END),
    ],
)
def test_legal_transitions(current, requested, expected):
    assert next_status(current, requested) == expected


@pytest.mark.parametrize(
    "current, requested, fragment",
    [
        (E.JOURNEY_START, E.JOURNEY_START, "already started"),
        (None, E.MEAL_START, "start your journey first"),
        (E.JOURNEY_END, E.JOURNEY_END, "start your journey first"),
        (E.MEAL_START, E.REST_START, "already have a meal break open"),
        (E.MEAL_START, E.WAIT_END, "not a wait break"),
        (E.JOURNEY_START, E.REST_END, "no rest break open"),
        (E.WAIT_START, E.JOURNEY_END, "End your wait break"),
    ],
)
def test_illegal_transitions_carry_driver_readable_reason(current, requested, fragment):
    with pytest.raises(InvalidJourneyTransition) as excinfo:
        next_status(current, requested)
    assert fragment in excinfo.value.reason
    assert excinfo.value.requested == requested


def test_full_shift_with_meal_break_ends_off_journey(service, store, driver):
    for event_type in (E.JOURNEY_START, E.MEAL_START, E.MEAL_END, E.JOURNEY_END):
        service.record_event(TENANT, driver.driver_id, event_type)

    current = store.get_driver(TENANT, driver.driver_id).current_journey_status
    assert current == E.JOURNEY_END
    assert is_off_journey(current)
    history = service.history(TENANT, driver.driver_id)
    assert [event.type for event in history] == [E.JOURNEY_END, E.MEAL_END, E.MEAL_START, E.JOURNEY_START]


def test_overlapping_breaks_are_rejected_without_side_effects(service, store, driver):
    service.record_event(TENANT, driver.driver_id, E.JOURNEY_START)
    service.record_event(TENANT, driver.driver_id, E.MEAL_START)

    with pytest.raises(InvalidJourneyTransition):
        service.record_event(TENANT, driver.driver_id, E.REST_START)

    assert store.get_driver(TENANT, driver.driver_id).current_journey_status == E.MEAL_START
    assert len(store.list_journey_events(TENANT, driver.driver_id)) == 2


def test_event_keeps_location_and_notes(service, driver):
    event = service.record_event(
        TENANT,
        driver.driver_id,
        E.JOURNEY_START,
        latitude=-23.55,
        longitude=-46.63,
        location_address="Av. Paulista, 1000",
        notes="left depot",
    )

    assert event.event_id.startswith("JEV-")
    assert event.latitude == -23.55
    assert event.location_address == "Av. Paulista, 1000"


def test_unknown_driver_raises_key_error(service):
    with pytest.raises(KeyError):
        service.record_event(TENANT, "DRV-9999", E.JOURNEY_START)
    with pytest.raises(KeyError):
        service.history(TENANT, "DRV-9999")


def test_history_is_limited_to_requested_day(service, driver):
    service.record_event(TENANT, driver.driver_id, E.JOURNEY_START)
    today = get_settings().local_today()

    assert len(service.history(TENANT, driver.driver_id, today)) == 1
    assert service.history(TENANT, driver.driver_id, today - timedelta(days=1)) == []
