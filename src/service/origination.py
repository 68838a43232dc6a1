from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from origination.amortization import LoanCalculation, ScheduleRow, calculate_payment, generate_schedule
from origination.config import LendingLimits
from origination.data_models import (
    FuelType,
    LoanApplication,
    LoanApplicationChanges,
    LoanApplicationStatus,
    Offer,
    OfferStatus,
    OfferTerms,
    TransmissionType,
    Valuation,
    ValuationSource,
    Vehicle,
    VehicleCondition,
    VehicleSearch,
    to_record,
)
from origination.eligibility import validate_loan_eligibility
from origination.errors import BusinessRuleViolation, Conflict, NotFound
from origination.expiration import sweep_expired_offers
from origination.offer_generator import generate_offer
from origination.state_machines import (
    apply_loan_application_changes,
    ensure_offer_deletable,
    transition_loan_application,
    transition_offer,
)
from origination.valuation_checks import check_valuation_bounds, check_valuation_consistency
from origination.vin import model_year_from_vin, validate_vehicle_attributes, validate_vin
from service.logging_config import log_event
from service.messaging import LOAN_APPLICATION_EVENTS_TOPIC, OFFER_EVENTS_TOPIC, KafkaBus
from service.storage import OriginationStore, RedisCache

logger = logging.getLogger(__name__)

# Re-reads allowed after a lost compare-and-set.
MAX_STATUS_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class LoanOriginationService:
    """Drives vehicles, valuations, loan applications and offers through the engine.

    Every write validates first and persists second. Status changes on one
    entity are serialized by a per-id lock and written compare-and-set, so a
    losing writer re-reads and is judged against the transition table again.
    """

    def __init__(
        self,
        store: OriginationStore,
        limits: LendingLimits | None = None,
        bus: KafkaBus | None = None,
        cache: RedisCache | None = None,
        clock: Callable[[], datetime] = _utcnow,
        schedule_ttl_seconds: int = 3_600,
    ) -> None:
        self.store = store
        self.limits = limits or LendingLimits()
        self.bus = bus
        self.cache = cache
        self.clock = clock
        self.schedule_ttl_seconds = schedule_ttl_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key``. The entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _publish(self, topic: str, event: str, entity: Any) -> None:
        if self.bus is None:
            return
        await self.bus.publish(topic, {"event": event, "data": to_record(entity)}, key=entity.id)

    # ── Vehicles ────────────────────────────────────────────────────

    async def register_vehicle(
        self,
        *,
        vin: str,
        make: str,
        model: str,
        year: int,
        mileage: int,
        color: str,
        condition: VehicleCondition = VehicleCondition.GOOD,
        transmission: TransmissionType = TransmissionType.AUTOMATIC,
        fuel_type: FuelType = FuelType.GASOLINE,
    ) -> Vehicle:
        normalized = validate_vin(vin)
        validate_vehicle_attributes(year, mileage)
        if await self.store.find_vehicle_by_vin(normalized) is not None:
            raise Conflict("Vehicle with this VIN already exists", code="vin_already_exists")

        vin_year = model_year_from_vin(normalized, near_year=year)
        if vin_year is not None and vin_year != year:
            logger.warning("VIN %s suggests model year %s, but %s was provided", normalized, vin_year, year)

        now = self.clock()
        vehicle = Vehicle(
            id=_new_id(),
            vin=normalized,
            make=make,
            model=model,
            year=year,
            mileage=mileage,
            color=color,
            condition=condition,
            transmission=transmission,
            fuel_type=fuel_type,
            created_at=now,
            updated_at=now,
        )
        created = await self.store.insert_vehicle(vehicle)
        log_event(logger, "Vehicle registered", vehicle_id=created.id, vin=created.vin)
        return created

    async def get_vehicle(self, vehicle_id: str) -> Vehicle:
        return await self.store.get_vehicle(vehicle_id)

    async def get_vehicle_by_vin(self, vin: str) -> Vehicle:
        vehicle = await self.store.find_vehicle_by_vin(validate_vin(vin))
        if vehicle is None:
            raise NotFound("Vehicle", vin)
        return vehicle

    async def list_vehicles(self, search: VehicleSearch | None = None) -> list[Vehicle]:
        return await self.store.list_vehicles(search)

    async def update_vehicle(self, vehicle_id: str, **changes: Any) -> Vehicle:
        current = await self.store.get_vehicle(vehicle_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        if "vin" in changes:
            changes["vin"] = validate_vin(changes["vin"])
            if changes["vin"] != current.vin:
                existing = await self.store.find_vehicle_by_vin(changes["vin"])
                if existing is not None and existing.id != vehicle_id:
                    raise Conflict("Vehicle with this VIN already exists", code="vin_already_exists")
        updated = replace(current, **changes, updated_at=self.clock())
        validate_vehicle_attributes(updated.year, updated.mileage)
        return await self.store.update_vehicle(updated)

    async def delete_vehicle(self, vehicle_id: str) -> None:
        await self.store.delete_vehicle(vehicle_id)
        log_event(logger, "Vehicle deleted with dependent records", vehicle_id=vehicle_id)

    # ── Valuations ──────────────────────────────────────────────────

    async def record_valuation(
        self,
        *,
        vehicle_id: str,
        estimated_value: float,
        min_value: float,
        max_value: float,
        source: ValuationSource = ValuationSource.EXTERNAL_API,
        metadata: dict[str, Any] | None = None,
    ) -> Valuation:
        await self.store.get_vehicle(vehicle_id)
        check_valuation_bounds(estimated_value, min_value, max_value)
        valuation = Valuation(
            id=_new_id(),
            vehicle_id=vehicle_id,
            estimated_value=estimated_value,
            min_value=min_value,
            max_value=max_value,
            source=source,
            metadata=metadata,
            created_at=self.clock(),
        )
        created = await self.store.insert_valuation(valuation)
        log_event(logger, "Valuation recorded", vehicle_id=vehicle_id, valuation_id=created.id, estimated_value=estimated_value)
        return created

    async def get_valuation(self, valuation_id: str) -> Valuation:
        return await self.store.get_valuation(valuation_id)

    async def list_valuations(self, vehicle_id: str) -> list[Valuation]:
        await self.store.get_vehicle(vehicle_id)
        return await self.store.list_valuations(vehicle_id)

    async def latest_valuation(self, vehicle_id: str) -> Valuation:
        await self.store.get_vehicle(vehicle_id)
        valuation = await self.store.latest_valuation(vehicle_id)
        if valuation is None:
            raise NotFound("Valuation", f"latest for vehicle {vehicle_id}")
        return valuation

    async def delete_valuation(self, valuation_id: str) -> None:
        """Delete a valuation that no loan application was judged against."""
        async with self._locked(valuation_id):
            await self.store.delete_valuation(valuation_id)
        log_event(logger, "Valuation deleted", valuation_id=valuation_id)

    async def _authoritative_valuation(self, application: LoanApplication) -> Valuation:
        latest = await self.store.latest_valuation(application.vehicle_id)
        return latest or await self.store.get_valuation(application.valuation_id)

    # ── Loan applications ───────────────────────────────────────────

    async def create_loan_application(
        self,
        *,
        vehicle_id: str,
        valuation_id: str,
        loan_amount: float,
        interest_rate: float,
        term_months: int,
    ) -> LoanApplication:
        await self.store.get_vehicle(vehicle_id)
        # delete_valuation takes the same lock
        async with self._locked(valuation_id):
            valuation = await self.store.get_valuation(valuation_id)
            check_valuation_consistency(valuation, vehicle_id)
            ltv = validate_loan_eligibility(
                loan_amount, interest_rate, term_months, valuation.estimated_value, self.limits
            )

            now = self.clock()
            application = LoanApplication(
                id=_new_id(),
                vehicle_id=vehicle_id,
                valuation_id=valuation_id,
                loan_amount=loan_amount,
                interest_rate=interest_rate,
                term_months=term_months,
                status=LoanApplicationStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            created = await self.store.create_loan_application(application)
        log_event(logger, "Loan application created", loan_application_id=created.id, ltv=ltv)
        await self._publish(LOAN_APPLICATION_EVENTS_TOPIC, "loan_application.created", created)
        return created

    async def get_loan_application(self, application_id: str) -> LoanApplication:
        return await self.store.get_loan_application(application_id)

    async def list_loan_applications(
        self,
        status: LoanApplicationStatus | None = None,
        vehicle_id: str | None = None,
        valuation_id: str | None = None,
    ) -> list[LoanApplication]:
        if vehicle_id is not None:
            await self.store.get_vehicle(vehicle_id)
        if valuation_id is not None:
            await self.store.get_valuation(valuation_id)
        return await self.store.list_loan_applications(
            status=status, vehicle_id=vehicle_id, valuation_id=valuation_id
        )

    async def update_loan_application(self, application_id: str, changes: LoanApplicationChanges) -> LoanApplication:
        async with self._locked(application_id):
            for _ in range(MAX_STATUS_ATTEMPTS):
                current = await self.store.get_loan_application(application_id)
                estimated_value = 0.0
                if changes.touches_terms():
                    estimated_value = (await self._authoritative_valuation(current)).estimated_value
                updated = apply_loan_application_changes(
                    current, changes, estimated_value, self.limits, now=self.clock()
                )
                if updated is current:
                    return current
                saved = await self.store.update_loan_application(updated, expected_status=current.status)
                if saved is not None:
                    break
            else:
                raise Conflict("Loan application is being modified concurrently", code="concurrent_modification")

        log_event(logger, "Loan application updated", loan_application_id=application_id, status=saved.status.value)
        if saved.status is not current.status:
            await self._publish(LOAN_APPLICATION_EVENTS_TOPIC, f"loan_application.{saved.status.value}", saved)
        return saved

    async def transition_loan_application(
        self, application_id: str, status: LoanApplicationStatus
    ) -> LoanApplication:
        async with self._locked(application_id):
            for _ in range(MAX_STATUS_ATTEMPTS):
                current = await self.store.get_loan_application(application_id)
                updated = transition_loan_application(current, status, now=self.clock())
                saved = await self.store.update_loan_application(updated, expected_status=current.status)
                if saved is not None:
                    break
            else:
                raise Conflict("Loan application is being modified concurrently", code="concurrent_modification")

        log_event(
            logger,
            "Loan application status changed",
            loan_application_id=application_id,
            previous=current.status.value,
            status=saved.status.value,
        )
        await self._publish(LOAN_APPLICATION_EVENTS_TOPIC, f"loan_application.{saved.status.value}", saved)
        return saved

    async def review_loan_application(self, application_id: str) -> LoanApplication:
        return await self.transition_loan_application(application_id, LoanApplicationStatus.UNDER_REVIEW)

    async def approve_loan_application(self, application_id: str) -> LoanApplication:
        return await self.transition_loan_application(application_id, LoanApplicationStatus.APPROVED)

    async def reject_loan_application(self, application_id: str) -> LoanApplication:
        return await self.transition_loan_application(application_id, LoanApplicationStatus.REJECTED)

    async def cancel_loan_application(self, application_id: str) -> LoanApplication:
        return await self.transition_loan_application(application_id, LoanApplicationStatus.CANCELLED)

    async def delete_loan_application(self, application_id: str) -> None:
        async with self._locked(application_id):
            await self.store.get_loan_application(application_id)
            active = await self.store.list_offers(loan_application_id=application_id, status=OfferStatus.ACTIVE)
            if active:
                raise BusinessRuleViolation(
                    "active_offer_exists", "Cannot delete a loan application with an active offer"
                )
            await self.store.delete_loan_application(application_id)
        log_event(logger, "Loan application deleted", loan_application_id=application_id)

    async def loan_payment(self, application_id: str) -> LoanCalculation:
        application = await self.store.get_loan_application(application_id)
        return calculate_payment(application.loan_amount, application.interest_rate, application.term_months)

    async def loan_schedule(self, application_id: str) -> LoanCalculation:
        application = await self.store.get_loan_application(application_id)
        return await self._schedule(application.loan_amount, application.interest_rate, application.term_months)

    async def _schedule(self, principal: float, annual_rate: float, term_months: int) -> LoanCalculation:
        key = f"schedule:{principal:.2f}:{annual_rate:.4f}:{term_months}"
        if self.cache is not None:
            cached = await self.cache.get_json(key)
            if cached is not None:
                rows = [ScheduleRow(**row) for row in cached.pop("schedule", [])]
                return LoanCalculation(**cached, schedule=rows)
        calculation = generate_schedule(principal, annual_rate, term_months)
        if self.cache is not None:
            await self.cache.set_json(key, calculation.to_dict(), ttl_seconds=self.schedule_ttl_seconds)
        return calculation

    # ── Offers ──────────────────────────────────────────────────────

    async def create_offer(self, loan_application_id: str, terms: OfferTerms) -> Offer:
        async with self._locked(loan_application_id):
            application = await self.store.get_loan_application(loan_application_id)
            existing = await self.store.list_offers(loan_application_id=loan_application_id)
            offer = generate_offer(application, terms, existing, now=self.clock(), limits=self.limits, id_factory=_new_id)
            # The store's unique active-offer index backs the check above.
            created = await self.store.create_offer(offer)

        log_event(
            logger,
            "Offer created",
            offer_id=created.id,
            loan_application_id=loan_application_id,
            offered_amount=created.offered_amount,
            monthly_payment=created.monthly_payment,
        )
        await self._publish(OFFER_EVENTS_TOPIC, "offer.created", created)
        return created

    async def get_offer(self, offer_id: str) -> Offer:
        return await self.store.get_offer(offer_id)

    async def list_offers(self, status: OfferStatus | None = None) -> list[Offer]:
        return await self.store.list_offers(status=status)

    async def offers_for_loan_application(self, loan_application_id: str) -> list[Offer]:
        await self.store.get_loan_application(loan_application_id)
        return await self.store.list_offers(loan_application_id=loan_application_id)

    async def transition_offer(self, offer_id: str, status: OfferStatus) -> Offer:
        async with self._locked(offer_id):
            for _ in range(MAX_STATUS_ATTEMPTS):
                current = await self.store.get_offer(offer_id)
                updated = transition_offer(current, status, self.clock())
                saved = await self.store.update_offer_status(updated, expected_status=current.status)
                if saved is not None:
                    break
            else:
                raise Conflict("Offer is being modified concurrently", code="concurrent_modification")

        log_event(logger, "Offer status changed", offer_id=offer_id, status=saved.status.value)
        await self._publish(OFFER_EVENTS_TOPIC, f"offer.{saved.status.value}", saved)
        return saved

    async def accept_offer(self, offer_id: str) -> Offer:
        return await self.transition_offer(offer_id, OfferStatus.ACCEPTED)

    async def decline_offer(self, offer_id: str) -> Offer:
        return await self.transition_offer(offer_id, OfferStatus.DECLINED)

    async def delete_offer(self, offer_id: str) -> None:
        async with self._locked(offer_id):
            offer = await self.store.get_offer(offer_id)
            ensure_offer_deletable(offer)
            await self.store.delete_offer(offer_id)
        log_event(logger, "Offer deleted", offer_id=offer_id, status=offer.status.value)

    async def offer_schedule(self, offer_id: str) -> LoanCalculation:
        offer = await self.store.get_offer(offer_id)
        return await self._schedule(offer.offered_amount, offer.interest_rate, offer.loan_term)

    async def expire_overdue_offers(self) -> int:
        count = await sweep_expired_offers(self.store, self.clock())
        log_event(logger, "Offer expiration sweep finished", expired=count)
        return count
