"""SQLite-backed fleet state store for routes, deliveries and driver journeys."""
from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterable, List, Optional, Sequence

from driverchat.core.config import get_settings
from driverchat.models.fleet import (
    CustomerRecord,
    DeliveryRecord,
    DeliveryStatus,
    DriverRecord,
    JourneyEventRecord,
    JourneyEventType,
    OccurrenceRecord,
    OccurrenceType,
    RouteRecord,
    RouteStatus,
    TenantConfig,
    TenantRecord,
    WorkflowStep,
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


_OPEN = (DeliveryStatus.PENDING.value, DeliveryStatus.IN_TRANSIT.value)
_PROCESSED = (DeliveryStatus.DELIVERED.value, DeliveryStatus.FAILED.value, DeliveryStatus.RETURNED.value)

_WORKFLOW_COLUMNS = {
    WorkflowStep.ARRIVED: "arrived_at",
    WorkflowStep.UNLOADING_STARTED: "unloading_started_at",
    WorkflowStep.UNLOADING_ENDED: "unloading_ended_at",
}

_DELIVERY_SELECT = """
    SELECT d.*, c.trade_name, c.legal_name, c.tax_id, c.phone AS customer_phone,
           c.address, c.latitude, c.longitude
    FROM deliveries d
    LEFT JOIN customers c ON c.tenant_id = d.tenant_id AND c.customer_id = d.customer_id
"""


class FleetStateStore:
    """Durable state for the driver chat core.

    Every status change is a single conditional UPDATE scoped by the current
    status. The returned row count tells the caller whether this call applied
    the transition or found it already applied.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        settings = get_settings()
        path = (db_path or settings.fleet_db_path or "").strip() or "./data/fleet_state.db"

        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS tenants (
                    tenant_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    config_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS drivers (
                    tenant_id TEXT NOT NULL,
                    driver_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    phone TEXT NOT NULL,
                    vehicle_id TEXT,
                    current_journey_status TEXT,
                    last_journey_event_at TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, driver_id)
                );

                CREATE INDEX IF NOT EXISTS idx_drivers_phone ON drivers (phone);

                CREATE TABLE IF NOT EXISTS customers (
                    tenant_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    trade_name TEXT NOT NULL,
                    legal_name TEXT,
                    tax_id TEXT,
                    phone TEXT,
                    address TEXT,
                    latitude REAL,
                    longitude REAL,
                    PRIMARY KEY (tenant_id, customer_id)
                );

                CREATE TABLE IF NOT EXISTS routes (
                    tenant_id TEXT NOT NULL,
                    route_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    route_date TEXT NOT NULL,
                    driver_id TEXT,
                    vehicle_id TEXT,
                    status TEXT NOT NULL,
                    start_time TEXT,
                    end_time TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, route_id)
                );

                CREATE INDEX IF NOT EXISTS idx_routes_tenant_driver_date
                    ON routes (tenant_id, driver_id, route_date);

                CREATE TABLE IF NOT EXISTS deliveries (
                    tenant_id TEXT NOT NULL,
                    delivery_id TEXT NOT NULL,
                    route_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    invoice_number TEXT NOT NULL,
                    volume REAL NOT NULL DEFAULT 0,
                    weight REAL NOT NULL DEFAULT 0,
                    value REAL NOT NULL DEFAULT 0,
                    product TEXT,
                    salesperson TEXT,
                    salesperson_phone TEXT,
                    priority TEXT,
                    status TEXT NOT NULL,
                    failure_reason TEXT,
                    proof_of_delivery TEXT,
                    arrived_at TEXT,
                    unloading_started_at TEXT,
                    unloading_ended_at TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, delivery_id)
                );

                CREATE INDEX IF NOT EXISTS idx_deliveries_tenant_route
                    ON deliveries (tenant_id, route_id, position);

                CREATE TABLE IF NOT EXISTS journey_events (
                    tenant_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    driver_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    location_address TEXT,
                    notes TEXT,
                    timestamp TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_journey_events_driver_ts
                    ON journey_events (tenant_id, driver_id, timestamp DESC);

                CREATE TABLE IF NOT EXISTS occurrences (
                    tenant_id TEXT NOT NULL,
                    occurrence_id TEXT NOT NULL,
                    driver_id TEXT NOT NULL,
                    route_id TEXT,
                    type TEXT NOT NULL,
                    description TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, occurrence_id)
                );

                CREATE TABLE IF NOT EXISTS learning_phrases (
                    tenant_id TEXT NOT NULL,
                    phrase_id TEXT NOT NULL,
                    phrase TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    driver_id TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, phrase_id)
                );

                CREATE INDEX IF NOT EXISTS idx_learning_phrases_active
                    ON learning_phrases (is_active, created_at DESC);

                CREATE TABLE IF NOT EXISTS timeline (
                    tenant_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    route_id TEXT NOT NULL,
                    delivery_id TEXT,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_timeline_tenant_route ON timeline (tenant_id, route_id);

                CREATE TABLE IF NOT EXISTS outbound_messages (
                    tenant_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, message_id)
                );

                CREATE INDEX IF NOT EXISTS idx_outbound_messages_tenant_recipient
                    ON outbound_messages (tenant_id, recipient, created_at DESC);
                """
            )
            self._conn.commit()

    # -- sequences and tenants -------------------------------------------------

    def _next_sequence_locked(self, tenant_id: str, key: str) -> int:
        row = self._conn.execute(
            "SELECT next_value FROM sequences WHERE tenant_id = ? AND key_name = ?",
            (tenant_id, key),
        ).fetchone()
        if row is None:
            current = 1
            self._conn.execute(
                "INSERT INTO sequences (tenant_id, key_name, next_value) VALUES (?, ?, ?)",
                (tenant_id, key, current + 1),
            )
        else:
            current = int(row["next_value"])
            self._conn.execute(
                "UPDATE sequences SET next_value = ? WHERE tenant_id = ? AND key_name = ?",
                (current + 1, tenant_id, key),
            )
        return current

    def next_sequence(self, tenant_id: str, key: str) -> int:
        with self._lock:
            current = self._next_sequence_locked(tenant_id, key)
            self._conn.commit()
            return current

    def _ensure_tenant(self, tenant_id: str) -> None:
        self._conn.execute(
            """
            INSERT OR IGNORE INTO tenants (tenant_id, name, config_json, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (tenant_id, tenant_id, _json_dumps(TenantConfig().model_dump(mode="json")), _utc_now_iso()),
        )

    def upsert_tenant(self, tenant_id: str, name: str, config: TenantConfig) -> TenantRecord:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO tenants (tenant_id, name, config_json, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id)
                DO UPDATE SET name = excluded.name, config_json = excluded.config_json
                """,
                (tenant_id, name, _json_dumps(config.model_dump(mode="json")), _utc_now_iso()),
            )
            self._conn.commit()
        return TenantRecord(tenant_id=tenant_id, name=name, config=config)

    def get_tenant(self, tenant_id: str) -> TenantRecord:
        with self._lock:
            self._ensure_tenant(tenant_id)
            self._conn.commit()
            row = self._conn.execute(
                "SELECT tenant_id, name, config_json FROM tenants WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        return TenantRecord(
            tenant_id=row["tenant_id"],
            name=row["name"],
            config=TenantConfig.model_validate(json.loads(row["config_json"])),
        )

    # -- drivers and customers -------------------------------------------------

    @staticmethod
    def _driver_from_row(row: sqlite3.Row) -> DriverRecord:
        return DriverRecord(
            driver_id=row["driver_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            phone=row["phone"],
            vehicle_id=row["vehicle_id"],
            current_journey_status=row["current_journey_status"],
            last_journey_event_at=row["last_journey_event_at"],
        )

    def create_driver(self, tenant_id: str, *, name: str, phone: str, vehicle_id: Optional[str] = None) -> DriverRecord:
        cleaned_name = " ".join(str(name or "").split()).strip()
        if len(cleaned_name) < 3:
            raise ValueError("Driver name must be at least 3 characters.")
        if not str(phone or "").strip():
            raise ValueError("Driver phone is required.")

        with self._lock:
            self._ensure_tenant(tenant_id)
            driver_id = f"DRV-{self._next_sequence_locked(tenant_id, 'driver'):04d}"
            self._conn.execute(
                """
                INSERT INTO drivers (tenant_id, driver_id, name, phone, vehicle_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, driver_id, cleaned_name, phone.strip(), vehicle_id, _utc_now_iso()),
            )
            self._conn.commit()
        return DriverRecord(
            driver_id=driver_id,
            tenant_id=tenant_id,
            name=cleaned_name,
            phone=phone.strip(),
            vehicle_id=vehicle_id,
        )

    def get_driver(self, tenant_id: str, driver_id: str) -> Optional[DriverRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM drivers WHERE tenant_id = ? AND driver_id = ?",
                (tenant_id, driver_id),
            ).fetchone()
        return self._driver_from_row(row) if row else None

    def list_drivers(self, tenant_id: str) -> List[DriverRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM drivers WHERE tenant_id = ? ORDER BY driver_id",
                (tenant_id,),
            ).fetchall()
        return [self._driver_from_row(row) for row in rows]

    def find_driver_by_phones(self, candidates: Sequence[str], tenant_id: Optional[str] = None) -> Optional[DriverRecord]:
        """Return the oldest driver whose stored phone equals any candidate."""
        values = [value for value in dict.fromkeys(candidates) if value]
        if not values:
            return None
        query = f"SELECT * FROM drivers WHERE phone IN ({_placeholders(len(values))})"
        params: List[Any] = list(values)
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY created_at ASC, driver_id ASC LIMIT 1"
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return self._driver_from_row(row) if row else None

    @staticmethod
    def _customer_from_row(row: sqlite3.Row) -> CustomerRecord:
        return CustomerRecord(
            customer_id=row["customer_id"],
            tenant_id=row["tenant_id"],
            trade_name=row["trade_name"],
            legal_name=row["legal_name"],
            tax_id=row["tax_id"],
            phone=row["phone"],
            address=row["address"],
            latitude=row["latitude"],
            longitude=row["longitude"],
        )

    def create_customer(
        self,
        tenant_id: str,
        *,
        trade_name: str,
        legal_name: Optional[str] = None,
        tax_id: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> CustomerRecord:
        with self._lock:
            self._ensure_tenant(tenant_id)
            customer_id = f"CUS-{self._next_sequence_locked(tenant_id, 'customer'):05d}"
            self._conn.execute(
                """
                INSERT INTO customers
                    (tenant_id, customer_id, trade_name, legal_name, tax_id, phone, address, latitude, longitude)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, customer_id, trade_name.strip(), legal_name, tax_id, phone, address, latitude, longitude),
            )
            self._conn.commit()
        return CustomerRecord(
            customer_id=customer_id,
            tenant_id=tenant_id,
            trade_name=trade_name.strip(),
            legal_name=legal_name,
            tax_id=tax_id,
            phone=phone,
            address=address,
            latitude=latitude,
            longitude=longitude,
        )

    def list_customers(self, tenant_id: str) -> List[CustomerRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM customers WHERE tenant_id = ? ORDER BY customer_id",
                (tenant_id,),
            ).fetchall()
        return [self._customer_from_row(row) for row in rows]

    # -- routes and deliveries -------------------------------------------------

    @staticmethod
    def _delivery_from_row(row: sqlite3.Row) -> DeliveryRecord:
        customer = None
        if row["trade_name"] is not None:
            customer = CustomerRecord(
                customer_id=row["customer_id"],
                tenant_id=row["tenant_id"],
                trade_name=row["trade_name"],
                legal_name=row["legal_name"],
                tax_id=row["tax_id"],
                phone=row["customer_phone"],
                address=row["address"],
                latitude=row["latitude"],
                longitude=row["longitude"],
            )
        return DeliveryRecord(
            delivery_id=row["delivery_id"],
            route_id=row["route_id"],
            customer_id=row["customer_id"],
            position=row["position"],
            invoice_number=row["invoice_number"],
            volume=row["volume"],
            weight=row["weight"],
            value=row["value"],
            product=row["product"],
            salesperson=row["salesperson"],
            salesperson_phone=row["salesperson_phone"],
            priority=row["priority"],
            status=row["status"],
            failure_reason=row["failure_reason"],
            proof_of_delivery=row["proof_of_delivery"],
            arrived_at=row["arrived_at"],
            unloading_started_at=row["unloading_started_at"],
            unloading_ended_at=row["unloading_ended_at"],
            updated_at=row["updated_at"],
            customer=customer,
        )

    @staticmethod
    def _route_from_row(row: sqlite3.Row, deliveries: Iterable[DeliveryRecord] = ()) -> RouteRecord:
        return RouteRecord(
            route_id=row["route_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            route_date=row["route_date"],
            driver_id=row["driver_id"],
            vehicle_id=row["vehicle_id"],
            status=row["status"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            created_at=row["created_at"],
            deliveries=list(deliveries),
        )

    def _deliveries_for_routes(self, tenant_id: str, route_ids: Sequence[str]) -> Dict[str, List[DeliveryRecord]]:
        grouped: Dict[str, List[DeliveryRecord]] = {route_id: [] for route_id in route_ids}
        if not route_ids:
            return grouped
        rows = self._conn.execute(
            _DELIVERY_SELECT
            + f" WHERE d.tenant_id = ? AND d.route_id IN ({_placeholders(len(route_ids))})"
            + " ORDER BY d.route_id, d.position",
            (tenant_id, *route_ids),
        ).fetchall()
        for row in rows:
            grouped.setdefault(row["route_id"], []).append(self._delivery_from_row(row))
        return grouped

    def insert_route(
        self,
        tenant_id: str,
        *,
        name: str,
        route_date: date,
        driver_id: Optional[str],
        vehicle_id: Optional[str],
        deliveries: Sequence[Dict[str, Any]],
    ) -> RouteRecord:
        """Create a route and all of its deliveries in one transaction."""
        if not deliveries:
            raise ValueError("A route needs at least one delivery.")

        now = _utc_now_iso()
        with self._lock:
            try:
                self._ensure_tenant(tenant_id)
                route_id = f"RTE-{self._next_sequence_locked(tenant_id, 'route'):05d}"
                self._conn.execute(
                    """
                    INSERT INTO routes
                        (tenant_id, route_id, name, route_date, driver_id, vehicle_id, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tenant_id,
                        route_id,
                        name,
                        route_date.isoformat(),
                        driver_id,
                        vehicle_id,
                        RouteStatus.PLANNED.value,
                        now,
                    ),
                )
                for position, item in enumerate(deliveries):
                    delivery_id = f"DLV-{self._next_sequence_locked(tenant_id, 'delivery'):06d}"
                    self._conn.execute(
                        """
                        INSERT INTO deliveries
                            (tenant_id, delivery_id, route_id, customer_id, position, invoice_number,
                             volume, weight, value, product, salesperson, salesperson_phone, priority,
                             status, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            tenant_id,
                            delivery_id,
                            route_id,
                            item["customer_id"],
                            position,
                            item["invoice_number"],
                            float(item.get("volume") or 0),
                            float(item.get("weight") or 0),
                            float(item.get("value") or 0),
                            item.get("product"),
                            item.get("salesperson"),
                            item.get("salesperson_phone"),
                            item.get("priority"),
                            DeliveryStatus.PENDING.value,
                            now,
                        ),
                    )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        route = self.get_route(tenant_id, route_id)
        if route is None:
            raise RuntimeError(f"Route {route_id} vanished right after import")
        return route

    def get_route(self, tenant_id: str, route_id: str) -> Optional[RouteRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM routes WHERE tenant_id = ? AND route_id = ?",
                (tenant_id, route_id),
            ).fetchone()
            if not row:
                return None
            deliveries = self._deliveries_for_routes(tenant_id, [route_id])
        return self._route_from_row(row, deliveries.get(route_id, []))

    def list_routes(
        self,
        tenant_id: str,
        *,
        driver_id: Optional[str] = None,
        route_date: Optional[date] = None,
        statuses: Optional[Sequence[RouteStatus]] = None,
    ) -> List[RouteRecord]:
        """List routes ordered by creation, deliveries included."""
        query = "SELECT * FROM routes WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if driver_id:
            query += " AND driver_id = ?"
            params.append(driver_id)
        if route_date:
            query += " AND route_date = ?"
            params.append(route_date.isoformat())
        if statuses:
            query += f" AND status IN ({_placeholders(len(statuses))})"
            params.extend(RouteStatus(status).value for status in statuses)
        query += " ORDER BY created_at ASC, route_id ASC"

        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
            deliveries = self._deliveries_for_routes(tenant_id, [row["route_id"] for row in rows])
        return [self._route_from_row(row, deliveries.get(row["route_id"], [])) for row in rows]

    def get_delivery(self, tenant_id: str, delivery_id: str) -> Optional[DeliveryRecord]:
        with self._lock:
            row = self._conn.execute(
                _DELIVERY_SELECT + " WHERE d.tenant_id = ? AND d.delivery_id = ?",
                (tenant_id, delivery_id),
            ).fetchone()
        return self._delivery_from_row(row) if row else None

    def count_open_deliveries(self, tenant_id: str, route_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT COUNT(*) AS c FROM deliveries
                WHERE tenant_id = ? AND route_id = ? AND status IN ({_placeholders(len(_OPEN))})
                """,
                (tenant_id, route_id, *_OPEN),
            ).fetchone()
        return int(row["c"])

    def activate_route(self, tenant_id: str, route_id: str, started_at: datetime) -> int:
        """PLANNED -> ACTIVE unless the driver already has an active route."""
        now = _utc_now_iso()
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE routes SET status = ?, start_time = ?
                WHERE tenant_id = ? AND route_id = ? AND status = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM routes other
                    WHERE other.tenant_id = routes.tenant_id
                      AND other.driver_id = routes.driver_id
                      AND other.status = ?
                      AND other.route_id <> routes.route_id
                  )
                """,
                (
                    RouteStatus.ACTIVE.value,
                    _iso(started_at),
                    tenant_id,
                    route_id,
                    RouteStatus.PLANNED.value,
                    RouteStatus.ACTIVE.value,
                ),
            )
            applied = cursor.rowcount
            if applied:
                self._conn.execute(
                    """
                    UPDATE deliveries SET status = ?, updated_at = ?
                    WHERE tenant_id = ? AND route_id = ? AND status = ?
                    """,
                    (DeliveryStatus.IN_TRANSIT.value, now, tenant_id, route_id, DeliveryStatus.PENDING.value),
                )
            self._conn.commit()
        return applied

    def revert_route(self, tenant_id: str, route_id: str) -> int:
        """ACTIVE -> PLANNED only while no delivery has been processed."""
        now = _utc_now_iso()
        with self._lock:
            cursor = self._conn.execute(
                f"""
                UPDATE routes SET status = ?, start_time = NULL
                WHERE tenant_id = ? AND route_id = ? AND status = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM deliveries d
                    WHERE d.tenant_id = routes.tenant_id
                      AND d.route_id = routes.route_id
                      AND d.status IN ({_placeholders(len(_PROCESSED))})
                  )
                """,
                (RouteStatus.PLANNED.value, tenant_id, route_id, RouteStatus.ACTIVE.value, *_PROCESSED),
            )
            applied = cursor.rowcount
            if applied:
                self._conn.execute(
                    """
                    UPDATE deliveries SET status = ?, updated_at = ?
                    WHERE tenant_id = ? AND route_id = ? AND status = ?
                    """,
                    (DeliveryStatus.PENDING.value, now, tenant_id, route_id, DeliveryStatus.IN_TRANSIT.value),
                )
            self._conn.commit()
        return applied

    def resolve_delivery(
        self,
        tenant_id: str,
        delivery_id: str,
        outcome: DeliveryStatus,
        reason: Optional[str] = None,
        proof_ref: Optional[str] = None,
    ) -> int:
        """Set DELIVERED/FAILED only while the delivery is still open."""
        with self._lock:
            cursor = self._conn.execute(
                f"""
                UPDATE deliveries
                SET status = ?, failure_reason = ?,
                    proof_of_delivery = COALESCE(?, proof_of_delivery), updated_at = ?
                WHERE tenant_id = ? AND delivery_id = ? AND status IN ({_placeholders(len(_OPEN))})
                """,
                (outcome.value, reason, proof_ref, _utc_now_iso(), tenant_id, delivery_id, *_OPEN),
            )
            self._conn.commit()
        return cursor.rowcount

    def complete_route(self, tenant_id: str, route_id: str, ended_at: datetime) -> int:
        """ACTIVE -> COMPLETED only when no open delivery remains."""
        with self._lock:
            cursor = self._conn.execute(
                f"""
                UPDATE routes SET status = ?, end_time = ?
                WHERE tenant_id = ? AND route_id = ? AND status = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM deliveries d
                    WHERE d.tenant_id = routes.tenant_id
                      AND d.route_id = routes.route_id
                      AND d.status IN ({_placeholders(len(_OPEN))})
                  )
                """,
                (
                    RouteStatus.COMPLETED.value,
                    _iso(ended_at),
                    tenant_id,
                    route_id,
                    RouteStatus.ACTIVE.value,
                    *_OPEN,
                ),
            )
            self._conn.commit()
        return cursor.rowcount

    def stamp_workflow_step(self, tenant_id: str, delivery_id: str, step: WorkflowStep, at: datetime) -> int:
        column = _WORKFLOW_COLUMNS[WorkflowStep(step)]
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE deliveries SET {column} = ?, updated_at = ? WHERE tenant_id = ? AND delivery_id = ?",
                (_iso(at), _utc_now_iso(), tenant_id, delivery_id),
            )
            self._conn.commit()
        return cursor.rowcount

    def reopen_delivery(self, tenant_id: str, delivery_id: str) -> int:
        """DELIVERED/FAILED -> open again, reactivating a completed route.

        A completed route only comes back while its driver has no other
        ACTIVE route; otherwise nothing changes and 0 is returned.
        """
        now = _utc_now_iso()
        with self._lock:
            row = self._conn.execute(
                """
                SELECT r.route_id, r.status AS route_status FROM deliveries d
                JOIN routes r ON r.tenant_id = d.tenant_id AND r.route_id = d.route_id
                WHERE d.tenant_id = ? AND d.delivery_id = ?
                """,
                (tenant_id, delivery_id),
            ).fetchone()
            if not row:
                return 0
            route_started = row["route_status"] != RouteStatus.PLANNED.value
            reopened_status = DeliveryStatus.IN_TRANSIT if route_started else DeliveryStatus.PENDING
            try:
                if row["route_status"] == RouteStatus.COMPLETED.value:
                    reactivated = self._conn.execute(
                        """
                        UPDATE routes SET status = ?, end_time = NULL
                        WHERE tenant_id = ? AND route_id = ? AND status = ?
                          AND NOT EXISTS (
                            SELECT 1 FROM routes other
                            WHERE other.tenant_id = routes.tenant_id
                              AND other.driver_id = routes.driver_id
                              AND other.status = ?
                              AND other.route_id <> routes.route_id
                          )
                        """,
                        (
                            RouteStatus.ACTIVE.value,
                            tenant_id,
                            row["route_id"],
                            RouteStatus.COMPLETED.value,
                            RouteStatus.ACTIVE.value,
                        ),
                    ).rowcount
                    if not reactivated:
                        self._conn.rollback()
                        return 0
                applied = self._conn.execute(
                    """
                    UPDATE deliveries
                    SET status = ?, failure_reason = NULL, proof_of_delivery = NULL, updated_at = ?
                    WHERE tenant_id = ? AND delivery_id = ? AND status IN (?, ?)
                    """,
                    (
                        reopened_status.value,
                        now,
                        tenant_id,
                        delivery_id,
                        DeliveryStatus.DELIVERED.value,
                        DeliveryStatus.FAILED.value,
                    ),
                ).rowcount
                if not applied:
                    self._conn.rollback()
                    return 0
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return applied

    # -- journey ----------------------------------------------------------------

    @staticmethod
    def _journey_event_from_row(row: sqlite3.Row) -> JourneyEventRecord:
        return JourneyEventRecord(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            driver_id=row["driver_id"],
            type=row["type"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            location_address=row["location_address"],
            notes=row["notes"],
            timestamp=row["timestamp"],
        )

    def append_journey_event(
        self,
        tenant_id: str,
        driver_id: str,
        *,
        event_type: JourneyEventType,
        expected_status: Optional[JourneyEventType],
        next_status: JourneyEventType,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        location_address: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[JourneyEventRecord]:
        """Append an event and move the driver's cached status in one transaction.

        Returns None when the driver's cached status no longer equals
        ``expected_status`` (a concurrent event won).
        """
        timestamp = _utc_now_iso()
        expected = expected_status.value if expected_status else None
        with self._lock:
            try:
                cursor = self._conn.execute(
                    """
                    UPDATE drivers SET current_journey_status = ?, last_journey_event_at = ?
                    WHERE tenant_id = ? AND driver_id = ? AND current_journey_status IS ?
                    """,
                    (next_status.value, timestamp, tenant_id, driver_id, expected),
                )
                if cursor.rowcount == 0:
                    self._conn.rollback()
                    return None
                event_id = f"JEV-{self._next_sequence_locked(tenant_id, 'journey'):06d}"
                self._conn.execute(
                    """
                    INSERT INTO journey_events
                        (tenant_id, event_id, driver_id, type, latitude, longitude, location_address, notes, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tenant_id,
                        event_id,
                        driver_id,
                        event_type.value,
                        latitude,
                        longitude,
                        location_address,
                        notes,
                        timestamp,
                    ),
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return JourneyEventRecord(
            event_id=event_id,
            tenant_id=tenant_id,
            driver_id=driver_id,
            type=event_type,
            latitude=latitude,
            longitude=longitude,
            location_address=location_address,
            notes=notes,
            timestamp=timestamp,
        )

    def list_journey_events(
        self,
        tenant_id: str,
        driver_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[JourneyEventRecord]:
        query = "SELECT * FROM journey_events WHERE tenant_id = ? AND driver_id = ?"
        params: List[Any] = [tenant_id, driver_id]
        if since:
            query += " AND timestamp >= ?"
            params.append(_iso(since))
        if until:
            query += " AND timestamp < ?"
            params.append(_iso(until))
        query += " ORDER BY timestamp DESC, event_id DESC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._journey_event_from_row(row) for row in rows]

    # -- occurrences, learning sink, timeline, outbound log ----------------------

    def add_occurrence(
        self,
        tenant_id: str,
        *,
        driver_id: str,
        route_id: Optional[str],
        occurrence_type: OccurrenceType,
        description: str,
    ) -> OccurrenceRecord:
        created_at = _utc_now_iso()
        with self._lock:
            occurrence_id = f"OCC-{self._next_sequence_locked(tenant_id, 'occurrence'):05d}"
            self._conn.execute(
                """
                INSERT INTO occurrences (tenant_id, occurrence_id, driver_id, route_id, type, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, occurrence_id, driver_id, route_id, occurrence_type.value, description, created_at),
            )
            self._conn.commit()
        return OccurrenceRecord(
            occurrence_id=occurrence_id,
            tenant_id=tenant_id,
            driver_id=driver_id,
            route_id=route_id,
            type=occurrence_type,
            description=description,
            created_at=created_at,
        )

    def list_occurrences(self, tenant_id: str, route_id: Optional[str] = None) -> List[OccurrenceRecord]:
        query = "SELECT * FROM occurrences WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if route_id:
            query += " AND route_id = ?"
            params.append(route_id)
        query += " ORDER BY created_at DESC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            OccurrenceRecord(
                occurrence_id=row["occurrence_id"],
                tenant_id=row["tenant_id"],
                driver_id=row["driver_id"],
                route_id=row["route_id"],
                type=row["type"],
                description=row["description"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def add_learning_phrase(
        self,
        tenant_id: str,
        *,
        phrase: str,
        intent: str,
        is_active: bool = False,
        driver_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        row = {
            "phrase": phrase,
            "intent": intent,
            "is_active": bool(is_active),
            "driver_id": driver_id,
            "created_at": _utc_now_iso(),
        }
        with self._lock:
            row["phrase_id"] = f"LRN-{self._next_sequence_locked(tenant_id, 'learning'):06d}"
            self._conn.execute(
                """
                INSERT INTO learning_phrases (tenant_id, phrase_id, phrase, intent, is_active, driver_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    row["phrase_id"],
                    phrase,
                    intent,
                    1 if is_active else 0,
                    driver_id,
                    row["created_at"],
                ),
            )
            self._conn.commit()
        return row

    def list_learning_phrases(
        self,
        tenant_id: Optional[str] = None,
        *,
        active_only: bool = False,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM learning_phrases WHERE 1 = 1"
        params: List[Any] = []
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(max(1, min(int(limit), 500)))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            {
                "phrase_id": row["phrase_id"],
                "phrase": row["phrase"],
                "intent": row["intent"],
                "is_active": bool(row["is_active"]),
                "driver_id": row["driver_id"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def record_timeline_event(
        self,
        tenant_id: str,
        route_id: str,
        event_type: str,
        actor: str,
        delivery_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        event = {
            "route_id": route_id,
            "delivery_id": delivery_id,
            "event_type": event_type,
            "actor": actor,
            "timestamp": _utc_now_iso(),
            "details": details or {},
        }
        with self._lock:
            event["event_id"] = f"EVT-{self._next_sequence_locked(tenant_id, 'event'):06d}"
            self._conn.execute(
                """
                INSERT INTO timeline (tenant_id, event_id, route_id, delivery_id, event_type, actor, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    event["event_id"],
                    route_id,
                    delivery_id,
                    event_type,
                    actor,
                    event["timestamp"],
                    _json_dumps(event["details"]),
                ),
            )
            self._conn.commit()
        return event

    def list_timeline(self, tenant_id: str, route_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT event_id, route_id, delivery_id, event_type, actor, timestamp, details_json
                FROM timeline
                WHERE tenant_id = ? AND route_id = ?
                ORDER BY timestamp DESC, event_id DESC
                LIMIT 300
                """,
                (tenant_id, route_id),
            ).fetchall()
        return [
            {
                "event_id": row["event_id"],
                "route_id": row["route_id"],
                "delivery_id": row["delivery_id"],
                "event_type": row["event_type"],
                "actor": row["actor"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def add_outbound_message(
        self,
        tenant_id: str,
        *,
        channel: str,
        recipient: str,
        payload: Dict[str, Any],
        status: str = "sent",
    ) -> Dict[str, Any]:
        now = _utc_now_iso()
        row = {
            "channel": str(channel or "unknown"),
            "recipient": str(recipient or "unknown"),
            "status": str(status or "sent"),
            "created_at": now,
            "payload": payload or {},
        }
        with self._lock:
            row["message_id"] = f"MSG-{self._next_sequence_locked(tenant_id, 'outbound'):06d}"
            self._conn.execute(
                """
                INSERT INTO outbound_messages (tenant_id, message_id, channel, recipient, status, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    row["message_id"],
                    row["channel"],
                    row["recipient"],
                    row["status"],
                    row["created_at"],
                    _json_dumps(row),
                ),
            )
            self._conn.commit()
        return row

    def list_outbound_messages(
        self,
        tenant_id: str,
        *,
        recipient: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        query = "SELECT data_json FROM outbound_messages WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if recipient:
            query += " AND recipient = ?"
            params.append(recipient)
        query += " ORDER BY created_at DESC, message_id DESC LIMIT ?"
        params.append(max(1, min(limit, 500)))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [json.loads(row["data_json"]) for row in rows]


fleet_state_store = FleetStateStore()
