from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    exists,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from origination.data_models import (
    FuelType,
    LoanApplication,
    LoanApplicationStatus,
    Offer,
    OfferStatus,
    TransmissionType,
    Valuation,
    ValuationSource,
    Vehicle,
    VehicleCondition,
    VehicleSearch,
)
from origination.errors import BusinessRuleViolation, Conflict, NotFound, PersistenceError

try:
    import redis.asyncio as redis
except ModuleNotFoundError:  # pragma: no cover
    redis = None

logger = logging.getLogger(__name__)

metadata = MetaData()

vehicles_table = Table(
    "vehicles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vin", String(17), nullable=False, unique=True),
    Column("make", String(100), nullable=False),
    Column("model", String(100), nullable=False),
    Column("year", Integer, nullable=False),
    Column("mileage", Integer, nullable=False),
    Column("color", String(50), nullable=False),
    Column("condition", String(32), nullable=False),
    Column("transmission", String(32), nullable=False),
    Column("fuel_type", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

valuations_table = Table(
    "valuations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("estimated_value", Float, nullable=False),
    Column("min_value", Float, nullable=False),
    Column("max_value", Float, nullable=False),
    Column("source", String(32), nullable=False),
    Column("metadata_json", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

loan_applications_table = Table(
    "loan_applications",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(36), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("valuation_id", String(36), ForeignKey("valuations.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("loan_amount", Float, nullable=False),
    Column("interest_rate", Float, nullable=False),
    Column("term_months", Integer, nullable=False),
    Column("status", String(32), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

offers_table = Table(
    "offers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "loan_application_id",
        String(36),
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("offered_amount", Float, nullable=False),
    Column("interest_rate", Float, nullable=False),
    Column("loan_term", Integer, nullable=False),
    Column("monthly_payment", Float, nullable=False),
    Column("total_payable", Float, nullable=False),
    Column("status", String(32), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("accepted_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

Index("ix_offers_status_expires_at", offers_table.c.status, offers_table.c.expires_at)

# At most one active offer per loan application, enforced by the database.
Index(
    "uq_offers_active_per_application",
    offers_table.c.loan_application_id,
    unique=True,
    postgresql_where=offers_table.c.status == OfferStatus.ACTIVE.value,
    sqlite_where=offers_table.c.status == OfferStatus.ACTIVE.value,
)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _valuation_in_use(valuation_id: str) -> BusinessRuleViolation:
    return BusinessRuleViolation(
        "valuation_in_use", f"Valuation {valuation_id} is referenced by a loan application"
    )


def vehicle_from_row(row: dict[str, Any]) -> Vehicle:
    return Vehicle(
        id=row["id"],
        vin=row["vin"],
        make=row["make"],
        model=row["model"],
        year=int(row["year"]),
        mileage=int(row["mileage"]),
        color=row["color"],
        condition=VehicleCondition(row["condition"]),
        transmission=TransmissionType(row["transmission"]),
        fuel_type=FuelType(row["fuel_type"]),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )


def valuation_from_row(row: dict[str, Any]) -> Valuation:
    return Valuation(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        estimated_value=float(row["estimated_value"]),
        min_value=float(row["min_value"]),
        max_value=float(row["max_value"]),
        source=ValuationSource(row["source"]),
        metadata=row.get("metadata_json"),
        created_at=_utc(row["created_at"]),
    )


def loan_application_from_row(row: dict[str, Any]) -> LoanApplication:
    return LoanApplication(
        id=row["id"],
        vehicle_id=row["vehicle_id"],
        valuation_id=row["valuation_id"],
        loan_amount=float(row["loan_amount"]),
        interest_rate=float(row["interest_rate"]),
        term_months=int(row["term_months"]),
        status=LoanApplicationStatus(row["status"]),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )


def offer_from_row(row: dict[str, Any]) -> Offer:
    return Offer(
        id=row["id"],
        loan_application_id=row["loan_application_id"],
        offered_amount=float(row["offered_amount"]),
        interest_rate=float(row["interest_rate"]),
        loan_term=int(row["loan_term"]),
        monthly_payment=float(row["monthly_payment"]),
        total_payable=float(row["total_payable"]),
        status=OfferStatus(row["status"]),
        expires_at=_utc(row["expires_at"]),
        accepted_at=_utc(row["accepted_at"]),
        created_at=_utc(row["created_at"]),
        updated_at=_utc(row["updated_at"]),
    )


def vehicle_row(vehicle: Vehicle) -> dict[str, Any]:
    now = _now()
    return {
        "id": vehicle.id,
        "vin": vehicle.vin,
        "make": vehicle.make,
        "model": vehicle.model,
        "year": vehicle.year,
        "mileage": vehicle.mileage,
        "color": vehicle.color,
        "condition": vehicle.condition.value,
        "transmission": vehicle.transmission.value,
        "fuel_type": vehicle.fuel_type.value,
        "created_at": vehicle.created_at or now,
        "updated_at": vehicle.updated_at or vehicle.created_at or now,
    }


def valuation_row(valuation: Valuation) -> dict[str, Any]:
    return {
        "id": valuation.id,
        "vehicle_id": valuation.vehicle_id,
        "estimated_value": float(valuation.estimated_value),
        "min_value": float(valuation.min_value),
        "max_value": float(valuation.max_value),
        "source": valuation.source.value,
        "metadata_json": valuation.metadata,
        "created_at": valuation.created_at or _now(),
    }


def loan_application_row(application: LoanApplication) -> dict[str, Any]:
    now = _now()
    return {
        "id": application.id,
        "vehicle_id": application.vehicle_id,
        "valuation_id": application.valuation_id,
        "loan_amount": float(application.loan_amount),
        "interest_rate": float(application.interest_rate),
        "term_months": int(application.term_months),
        "status": application.status.value,
        "created_at": application.created_at or now,
        "updated_at": application.updated_at or application.created_at or now,
    }


def offer_row(offer: Offer) -> dict[str, Any]:
    now = _now()
    return {
        "id": offer.id,
        "loan_application_id": offer.loan_application_id,
        "offered_amount": float(offer.offered_amount),
        "interest_rate": float(offer.interest_rate),
        "loan_term": int(offer.loan_term),
        "monthly_payment": float(offer.monthly_payment),
        "total_payable": float(offer.total_payable),
        "status": offer.status.value,
        "expires_at": offer.expires_at,
        "accepted_at": offer.accepted_at,
        "created_at": offer.created_at or now,
        "updated_at": offer.updated_at or offer.created_at or now,
    }


class RedisCache:
    def __init__(self, redis_url: str, namespace: str = "origination") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        if redis is None:
            return
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.warning("Redis unreachable at %s; using in-process cache", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                logger.warning("Redis read failed for %s", full_key, exc_info=True)
                return None
        now = asyncio.get_running_loop().time()
        if full_key in self._expiry and now > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                logger.warning("Redis write failed for %s; caching in-process", full_key, exc_info=True)
        self._mem[full_key] = payload
        self._expiry[full_key] = asyncio.get_running_loop().time() + ttl_seconds


class OriginationStore:
    """Persistence for vehicles, valuations, loan applications and offers.

    Falls back to in-process tables when the database cannot be reached, the
    same way the cache falls back from Redis. Status updates are
    compare-and-set: they only apply while the row still holds the expected
    status, and return ``None`` otherwise.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_vehicles: dict[str, dict[str, Any]] = {}
        self._mem_valuations: dict[str, dict[str, Any]] = {}
        self._mem_loan_applications: dict[str, dict[str, Any]] = {}
        self._mem_offers: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            logger.warning("Database unreachable; running origination store in memory", exc_info=True)
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[AsyncConnection]:
        assert self.engine is not None
        try:
            async with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Database operation failed: {exc}") from exc

    async def _fetch_one(self, table: Table, row_id: str) -> dict[str, Any] | None:
        async with self._begin() as conn:
            row = (await conn.execute(select(table).where(table.c.id == row_id))).first()
        return dict(row._mapping) if row else None

    async def _fetch_all(self, stmt) -> list[dict[str, Any]]:
        async with self._begin() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    @staticmethod
    def _newest_first(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ordered = sorted(enumerate(rows), key=lambda pair: (pair[1]["created_at"], pair[0]), reverse=True)
        return [row for _, row in ordered]

    # ── Vehicles ────────────────────────────────────────────────────

    async def insert_vehicle(self, vehicle: Vehicle) -> Vehicle:
        row = vehicle_row(vehicle)
        if self.engine is None:
            if any(v["vin"] == row["vin"] for v in self._mem_vehicles.values()):
                raise Conflict("Vehicle with this VIN already exists", code="vin_already_exists")
            self._mem_vehicles[row["id"]] = row
            return vehicle_from_row(row)
        try:
            async with self._begin() as conn:
                await conn.execute(insert(vehicles_table).values(**row))
        except IntegrityError as exc:
            raise Conflict("Vehicle with this VIN already exists", code="vin_already_exists") from exc
        return vehicle_from_row(row)

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        if self.engine is None:
            row = self._mem_vehicles.get(vehicle_id)
        else:
            row = await self._fetch_one(vehicles_table, vehicle_id)
        if row is None:
            raise NotFound("Vehicle", vehicle_id)
        return vehicle_from_row(row)

    async def find_vehicle_by_vin(self, vin: str) -> Vehicle | None:
        if self.engine is None:
            row = next((v for v in self._mem_vehicles.values() if v["vin"] == vin), None)
            return vehicle_from_row(row) if row else None
        rows = await self._fetch_all(select(vehicles_table).where(vehicles_table.c.vin == vin))
        return vehicle_from_row(rows[0]) if rows else None

    async def list_vehicles(self, search: VehicleSearch | None = None) -> list[Vehicle]:
        search = search or VehicleSearch()
        if self.engine is None:
            vehicles = [vehicle_from_row(r) for r in self._newest_first(list(self._mem_vehicles.values()))]
            return [v for v in vehicles if search.matches(v)]
        c = vehicles_table.c
        stmt = select(vehicles_table).order_by(c.created_at.desc())
        for column, needle in ((c.make, search.make), (c.model, search.model), (c.color, search.color)):
            if needle is not None:
                stmt = stmt.where(column.icontains(needle, autoescape=True))
        if search.year is not None:
            stmt = stmt.where(c.year == search.year)
        if search.year_min is not None:
            stmt = stmt.where(c.year >= search.year_min)
        if search.year_max is not None:
            stmt = stmt.where(c.year <= search.year_max)
        if search.mileage_min is not None:
            stmt = stmt.where(c.mileage >= search.mileage_min)
        if search.mileage_max is not None:
            stmt = stmt.where(c.mileage <= search.mileage_max)
        for column, choice in (
            (c.condition, search.condition),
            (c.transmission, search.transmission),
            (c.fuel_type, search.fuel_type),
        ):
            if choice is not None:
                stmt = stmt.where(column == choice.value)
        return [vehicle_from_row(r) for r in await self._fetch_all(stmt)]

    async def update_vehicle(self, vehicle: Vehicle) -> Vehicle:
        row = vehicle_row(vehicle)
        if self.engine is None:
            if vehicle.id not in self._mem_vehicles:
                raise NotFound("Vehicle", vehicle.id)
            if any(v["vin"] == row["vin"] and k != vehicle.id for k, v in self._mem_vehicles.items()):
                raise Conflict("Vehicle with this VIN already exists", code="vin_already_exists")
            self._mem_vehicles[vehicle.id] = row
            return vehicle_from_row(row)
        values = {k: v for k, v in row.items() if k not in ("id", "created_at")}
        try:
            async with self._begin() as conn:
                result = await conn.execute(
                    update(vehicles_table).where(vehicles_table.c.id == vehicle.id).values(**values)
                )
        except IntegrityError as exc:
            raise Conflict("Vehicle with this VIN already exists", code="vin_already_exists") from exc
        if result.rowcount == 0:
            raise NotFound("Vehicle", vehicle.id)
        return vehicle_from_row(row)

    async def delete_vehicle(self, vehicle_id: str) -> None:
        """Delete a vehicle together with its valuations, applications and offers."""
        if self.engine is None:
            if self._mem_vehicles.pop(vehicle_id, None) is None:
                raise NotFound("Vehicle", vehicle_id)
            app_ids = {k for k, a in self._mem_loan_applications.items() if a["vehicle_id"] == vehicle_id}
            self._mem_offers = {
                k: o for k, o in self._mem_offers.items() if o["loan_application_id"] not in app_ids
            }
            for app_id in app_ids:
                self._mem_loan_applications.pop(app_id)
            self._mem_valuations = {
                k: v for k, v in self._mem_valuations.items() if v["vehicle_id"] != vehicle_id
            }
            return
        app_ids = select(loan_applications_table.c.id).where(loan_applications_table.c.vehicle_id == vehicle_id)
        async with self._begin() as conn:
            await conn.execute(delete(offers_table).where(offers_table.c.loan_application_id.in_(app_ids)))
            await conn.execute(delete(loan_applications_table).where(loan_applications_table.c.vehicle_id == vehicle_id))
            await conn.execute(delete(valuations_table).where(valuations_table.c.vehicle_id == vehicle_id))
            result = await conn.execute(delete(vehicles_table).where(vehicles_table.c.id == vehicle_id))
        if result.rowcount == 0:
            raise NotFound("Vehicle", vehicle_id)

    # ── Valuations ──────────────────────────────────────────────────

    async def insert_valuation(self, valuation: Valuation) -> Valuation:
        row = valuation_row(valuation)
        if self.engine is None:
            self._mem_valuations[row["id"]] = row
            return valuation_from_row(row)
        async with self._begin() as conn:
            await conn.execute(insert(valuations_table).values(**row))
        return valuation_from_row(row)

    async def get_valuation(self, valuation_id: str) -> Valuation:
        if self.engine is None:
            row = self._mem_valuations.get(valuation_id)
        else:
            row = await self._fetch_one(valuations_table, valuation_id)
        if row is None:
            raise NotFound("Valuation", valuation_id)
        return valuation_from_row(row)

    async def list_valuations(self, vehicle_id: str) -> list[Valuation]:
        if self.engine is None:
            rows = [v for v in self._mem_valuations.values() if v["vehicle_id"] == vehicle_id]
            return [valuation_from_row(r) for r in self._newest_first(rows)]
        stmt = (
            select(valuations_table)
            .where(valuations_table.c.vehicle_id == vehicle_id)
            .order_by(valuations_table.c.created_at.desc())
        )
        return [valuation_from_row(r) for r in await self._fetch_all(stmt)]

    async def delete_valuation(self, valuation_id: str) -> None:
        """Delete a valuation no loan application references.

        The reference check and the delete are one step: in memory there is no
        ``await`` between them, in SQL the delete is conditional on the check.
        """
        if self.engine is None:
            if valuation_id not in self._mem_valuations:
                raise NotFound("Valuation", valuation_id)
            if any(a["valuation_id"] == valuation_id for a in self._mem_loan_applications.values()):
                raise _valuation_in_use(valuation_id)
            del self._mem_valuations[valuation_id]
            return
        referenced = exists().where(loan_applications_table.c.valuation_id == valuation_id)
        async with self._begin() as conn:
            result = await conn.execute(
                delete(valuations_table).where(valuations_table.c.id == valuation_id).where(~referenced)
            )
        if result.rowcount == 0:
            await self.get_valuation(valuation_id)
            raise _valuation_in_use(valuation_id)

    async def latest_valuation(self, vehicle_id: str) -> Valuation | None:
        valuations = await self.list_valuations(vehicle_id)
        return valuations[0] if valuations else None

    # ── Loan applications ───────────────────────────────────────────

    async def create_loan_application(self, application: LoanApplication) -> LoanApplication:
        row = loan_application_row(application)
        if self.engine is None:
            self._mem_loan_applications[row["id"]] = row
            return loan_application_from_row(row)
        async with self._begin() as conn:
            await conn.execute(insert(loan_applications_table).values(**row))
        return loan_application_from_row(row)

    async def get_loan_application(self, application_id: str) -> LoanApplication:
        if self.engine is None:
            row = self._mem_loan_applications.get(application_id)
        else:
            row = await self._fetch_one(loan_applications_table, application_id)
        if row is None:
            raise NotFound("Loan application", application_id)
        return loan_application_from_row(row)

    async def list_loan_applications(
        self,
        status: LoanApplicationStatus | None = None,
        vehicle_id: str | None = None,
        valuation_id: str | None = None,
    ) -> list[LoanApplication]:
        if self.engine is None:
            rows = [
                a
                for a in self._mem_loan_applications.values()
                if (status is None or a["status"] == status.value)
                and (vehicle_id is None or a["vehicle_id"] == vehicle_id)
                and (valuation_id is None or a["valuation_id"] == valuation_id)
            ]
            return [loan_application_from_row(r) for r in self._newest_first(rows)]
        stmt = select(loan_applications_table).order_by(loan_applications_table.c.created_at.desc())
        if status is not None:
            stmt = stmt.where(loan_applications_table.c.status == status.value)
        if vehicle_id is not None:
            stmt = stmt.where(loan_applications_table.c.vehicle_id == vehicle_id)
        if valuation_id is not None:
            stmt = stmt.where(loan_applications_table.c.valuation_id == valuation_id)
        return [loan_application_from_row(r) for r in await self._fetch_all(stmt)]

    async def update_loan_application(
        self,
        application: LoanApplication,
        expected_status: LoanApplicationStatus,
    ) -> LoanApplication | None:
        row = loan_application_row(application)
        values = {k: v for k, v in row.items() if k not in ("id", "vehicle_id", "valuation_id", "created_at")}
        if self.engine is None:
            current = self._mem_loan_applications.get(application.id)
            if current is None:
                raise NotFound("Loan application", application.id)
            if current["status"] != expected_status.value:
                return None
            current.update(values)
            return loan_application_from_row(current)
        async with self._begin() as conn:
            result = await conn.execute(
                update(loan_applications_table)
                .where(loan_applications_table.c.id == application.id)
                .where(loan_applications_table.c.status == expected_status.value)
                .values(**values)
            )
        if result.rowcount == 0:
            await self.get_loan_application(application.id)
            return None
        return await self.get_loan_application(application.id)

    async def update_loan_application_status(
        self,
        application_id: str,
        status: LoanApplicationStatus,
        expected_status: LoanApplicationStatus,
        now: datetime | None = None,
    ) -> LoanApplication | None:
        current = await self.get_loan_application(application_id)
        return await self.update_loan_application(
            replace(current, status=status, updated_at=now or _now()), expected_status
        )

    async def delete_loan_application(self, application_id: str) -> None:
        if self.engine is None:
            if self._mem_loan_applications.pop(application_id, None) is None:
                raise NotFound("Loan application", application_id)
            self._mem_offers = {
                k: o for k, o in self._mem_offers.items() if o["loan_application_id"] != application_id
            }
            return
        async with self._begin() as conn:
            await conn.execute(delete(offers_table).where(offers_table.c.loan_application_id == application_id))
            result = await conn.execute(
                delete(loan_applications_table).where(loan_applications_table.c.id == application_id)
            )
        if result.rowcount == 0:
            raise NotFound("Loan application", application_id)

    # ── Offers ──────────────────────────────────────────────────────

    async def create_offer(self, offer: Offer) -> Offer:
        """Insert an offer; a second active offer for one application is a ``Conflict``."""
        row = offer_row(offer)
        if self.engine is None:
            # No await between the check and the insert.
            if row["status"] == OfferStatus.ACTIVE.value and any(
                o["loan_application_id"] == row["loan_application_id"] and o["status"] == OfferStatus.ACTIVE.value
                for o in self._mem_offers.values()
            ):
                raise Conflict("Loan application already has an active offer", code="active_offer_exists")
            self._mem_offers[row["id"]] = row
            return offer_from_row(row)
        try:
            async with self._begin() as conn:
                await conn.execute(insert(offers_table).values(**row))
        except IntegrityError as exc:
            raise Conflict("Loan application already has an active offer", code="active_offer_exists") from exc
        return offer_from_row(row)

    async def get_offer(self, offer_id: str) -> Offer:
        if self.engine is None:
            row = self._mem_offers.get(offer_id)
        else:
            row = await self._fetch_one(offers_table, offer_id)
        if row is None:
            raise NotFound("Offer", offer_id)
        return offer_from_row(row)

    async def list_offers(
        self,
        loan_application_id: str | None = None,
        status: OfferStatus | None = None,
    ) -> list[Offer]:
        if self.engine is None:
            rows = [
                o
                for o in self._mem_offers.values()
                if (loan_application_id is None or o["loan_application_id"] == loan_application_id)
                and (status is None or o["status"] == status.value)
            ]
            return [offer_from_row(r) for r in self._newest_first(rows)]
        stmt = select(offers_table).order_by(offers_table.c.created_at.desc())
        if loan_application_id is not None:
            stmt = stmt.where(offers_table.c.loan_application_id == loan_application_id)
        if status is not None:
            stmt = stmt.where(offers_table.c.status == status.value)
        return [offer_from_row(r) for r in await self._fetch_all(stmt)]

    async def update_offer_status(self, offer: Offer, expected_status: OfferStatus) -> Offer | None:
        values = {
            "status": offer.status.value,
            "accepted_at": offer.accepted_at,
            "updated_at": offer.updated_at or _now(),
        }
        if self.engine is None:
            current = self._mem_offers.get(offer.id)
            if current is None:
                raise NotFound("Offer", offer.id)
            if current["status"] != expected_status.value:
                return None
            current.update(values)
            return offer_from_row(current)
        async with self._begin() as conn:
            result = await conn.execute(
                update(offers_table)
                .where(offers_table.c.id == offer.id)
                .where(offers_table.c.status == expected_status.value)
                .values(**values)
            )
        if result.rowcount == 0:
            await self.get_offer(offer.id)
            return None
        return await self.get_offer(offer.id)

    async def delete_offer(self, offer_id: str) -> None:
        if self.engine is None:
            if self._mem_offers.pop(offer_id, None) is None:
                raise NotFound("Offer", offer_id)
            return
        async with self._begin() as conn:
            result = await conn.execute(delete(offers_table).where(offers_table.c.id == offer_id))
        if result.rowcount == 0:
            raise NotFound("Offer", offer_id)

    async def find_active_offers_expired_before(self, now: datetime) -> list[Offer]:
        if self.engine is None:
            return [
                offer_from_row(o)
                for o in self._mem_offers.values()
                if o["status"] == OfferStatus.ACTIVE.value and o["expires_at"] < now
            ]
        stmt = (
            select(offers_table)
            .where(offers_table.c.status == OfferStatus.ACTIVE.value)
            .where(offers_table.c.expires_at < now)
        )
        return [offer_from_row(r) for r in await self._fetch_all(stmt)]
