"""Phone equivalence and driver lookup."""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_fleet"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["FLEET_DB_PATH"] = str(TMP / "fleet_state.db")
os.environ["OPENAI_API_KEY"] = ""
os.environ["DEFAULT_MESSAGING_PROVIDER"] = "log"
os.environ["WEBHOOK_CLIENT_TOKEN"] = "test-webhook-token"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from driverchat.services.fleet_state import FleetStateStore  # noqa: E402
from driverchat.services.phone_identity import (  # noqa: E402
    DriverNotFound,
    PhoneIdentityResolver,
    national_number,
    phone_candidates,
)


EQUIVALENT_FORMS = [
    "5511999998888",
    "11999998888",
    "+55 (11) 99999-8888",
    "1199998888",
]


def test_national_number_strips_formatting_and_country_prefix():
    assert national_number("+55 (11) 99999-8888") == "11999998888"
    assert national_number("5511999998888") == "11999998888"
    assert national_number("551199998888") == "1199998888"
    assert national_number("11999998888") == "11999998888"


def test_candidates_for_modern_mobile_include_legacy_variant():
    candidates = phone_candidates("11999998888")
    assert "11999998888" in candidates
    assert "5511999998888" in candidates
    assert "+55 (11) 99999-8888" in candidates
    assert "1199998888" in candidates
    assert "551199998888" in candidates
    assert "+55 (11) 9999-8888" in candidates


def test_candidates_for_legacy_number_add_leading_nine():
    candidates = phone_candidates("(11) 9999-8888")
    assert "1199998888" in candidates
    assert "11999998888" in candidates
    assert "5511999998888" in candidates
    assert "+55 (11) 99999-8888" in candidates


def test_candidates_do_not_drop_nine_from_non_mobile_prefix():
    candidates = phone_candidates("11899998888")
    assert "1199998888" not in candidates
    assert len(candidates) == 3


def test_candidates_are_unique_and_empty_input_yields_nothing():
    candidates = phone_candidates("5511999998888")
    assert len(candidates) == len(set(candidates))
    assert phone_candidates("") == []
    assert phone_candidates("not a phone") == []


@pytest.mark.parametrize("stored", EQUIVALENT_FORMS)
@pytest.mark.parametrize("inbound", EQUIVALENT_FORMS)
def test_all_equivalent_forms_resolve_to_same_driver(tmp_path, stored, inbound):
    store = FleetStateStore(db_path=str(tmp_path / "identity.db"))
    driver = store.create_driver("identity", name="Carlos Souza", phone=stored)
    store.create_driver("identity", name="Other Driver", phone="21988887777")

    resolved = PhoneIdentityResolver(store).resolve(inbound)

    assert resolved.driver_id == driver.driver_id


def test_lookup_can_be_scoped_to_tenant(tmp_path):
    store = FleetStateStore(db_path=str(tmp_path / "identity.db"))
    store.create_driver("tenant_a", name="Ana Lima", phone="11999998888")
    other = store.create_driver("tenant_b", name="Bruno Reis", phone="5511999998888")

    resolved = PhoneIdentityResolver(store).resolve("+55 (11) 99999-8888", tenant_id="tenant_b")

    assert resolved.driver_id == other.driver_id
    assert resolved.tenant_id == "tenant_b"


def test_unknown_phone_raises_driver_not_found(tmp_path):
    store = FleetStateStore(db_path=str(tmp_path / "identity.db"))
    store.create_driver("identity", name="Carlos Souza", phone="11999998888")

    with pytest.raises(DriverNotFound):
        PhoneIdentityResolver(store).resolve("21 97777-6666")
