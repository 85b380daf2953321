"""Queue of unclassified driver phrases for back-office curation."""
from __future__ import annotations

from typing import Optional

from driverchat.core.logging import logger
from driverchat.services.fleet_state import FleetStateStore, fleet_state_store


REVIEW_INTENT = "REVISAR"


class LearningSink:
    """Stores phrases the classifier could not place.

    Rows are inactive until curated; recording never raises into the reply path.
    """

    def __init__(self, store: FleetStateStore | None = None):
        self.store = store or fleet_state_store

    def record(self, tenant_id: str, phrase: Optional[str], driver_id: Optional[str] = None) -> bool:
        text = (phrase or "").strip()
        if not text:
            return False
        try:
            self.store.add_learning_phrase(
                tenant_id,
                phrase=text[:1000],
                intent=REVIEW_INTENT,
                is_active=False,
                driver_id=driver_id,
            )
        except Exception as exc:
            logger.error("Could not queue phrase for review", error=str(exc), tenant_id=tenant_id)
            return False
        logger.info("Phrase queued for review", tenant_id=tenant_id, driver_id=driver_id)
        return True
