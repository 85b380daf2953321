"""Resolve inbound phone strings to known drivers despite inconsistent formatting."""
from __future__ import annotations

import re
from typing import List, Optional

from driverchat.core.config import Settings, get_settings
from driverchat.core.logging import logger
from driverchat.models.fleet import DriverRecord
from driverchat.services.fleet_state import FleetStateStore, fleet_state_store


_NON_DIGITS = re.compile(r"\D+")


class DriverNotFound(Exception):
    """No driver is registered under any equivalent form of the phone number."""

    def __init__(self, raw_phone: str):
        super().__init__(f"No driver found for phone {raw_phone!r}")
        self.raw_phone = raw_phone


def digits_only(raw_phone: str | None) -> str:
    return _NON_DIGITS.sub("", raw_phone or "")


def national_number(raw_phone: str | None, settings: Settings | None = None) -> str:
    """Strip formatting and a leading country prefix from a phone string."""
    settings = settings or get_settings()
    clean = digits_only(raw_phone)
    country = settings.phone_country_code
    if country and clean.startswith(country) and len(clean) > settings.national_number_length():
        clean = clean[len(country):]
    return clean


def _visual(country: str, area: str, subscriber: str) -> str:
    split = len(subscriber) - 4
    return f"+{country} ({area}) {subscriber[:split]}-{subscriber[split:]}"


def phone_candidates(raw_phone: str | None, settings: Settings | None = None) -> List[str]:
    """Every stored encoding that may represent the same physical number.

    Covers the bare national number, the country-prefixed form, the
    punctuated ``+CC (AA) NNNNN-NNNN`` form, and the 8/9 digit mobile
    variants (extra leading ``9`` added or removed).
    """
    settings = settings or get_settings()
    country = settings.phone_country_code
    area_len = settings.phone_area_code_length
    modern_len = settings.phone_subscriber_length

    clean = national_number(raw_phone, settings)
    if not clean:
        return []

    candidates = [clean, f"{country}{clean}"]
    if len(clean) <= area_len:
        return candidates

    area = clean[:area_len]
    subscriber = clean[area_len:]
    if len(subscriber) >= 8:
        candidates.append(_visual(country, area, subscriber))

    variants: List[str] = []
    if len(subscriber) == modern_len - 1:
        variants.append(f"9{subscriber}")
    elif len(subscriber) == modern_len and subscriber.startswith("9"):
        variants.append(subscriber[1:])

    for variant in variants:
        candidates.extend(
            [
                f"{area}{variant}",
                f"{country}{area}{variant}",
                _visual(country, area, variant),
            ]
        )

    return list(dict.fromkeys(candidates))


class PhoneIdentityResolver:
    """Look a driver up by enumerated phone equivalence."""

    def __init__(self, store: FleetStateStore | None = None, settings: Settings | None = None):
        self.store = store or fleet_state_store
        self.settings = settings

    def resolve(self, raw_phone: str, tenant_id: Optional[str] = None) -> DriverRecord:
        candidates = phone_candidates(raw_phone, self.settings or get_settings())
        driver = self.store.find_driver_by_phones(candidates, tenant_id=tenant_id)
        if driver is None:
            logger.info("Driver not identified", candidates=candidates, tenant_id=tenant_id)
            raise DriverNotFound(raw_phone)
        logger.info("Driver identified", driver_id=driver.driver_id, tenant_id=driver.tenant_id)
        return driver
