from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from origination.amortization import schedule_csv
from origination.data_models import (
    FuelType,
    LoanApplicationChanges,
    LoanApplicationStatus,
    OfferStatus,
    OfferTerms,
    TransmissionType,
    ValuationSource,
    VehicleCondition,
    VehicleSearch,
    to_record,
)
from origination.errors import (
    BusinessRuleViolation,
    Conflict,
    ConsistencyError,
    InvalidArgument,
    InvalidStateTransition,
    NotFound,
    OriginationError,
    PersistenceError,
)
from origination.scheduler import build_expiration_sweep_scheduler
from service.logging_config import configure_logging, correlation_id, log_event
from service.messaging import SWEEP_TRIGGERS_TOPIC, KafkaBus
from service.origination import LoanOriginationService
from service.settings import ServiceSettings
from service.storage import OriginationStore, RedisCache

logger = logging.getLogger(__name__)


# ── Request / Response Models ───────────────────────────────────────

class VehicleCreateRequest(BaseModel):
    vin: str
    make: str = Field(min_length=1, max_length=100)
    model: str = Field(min_length=1, max_length=100)
    year: int
    mileage: int
    color: str = Field(min_length=1, max_length=50)
    condition: VehicleCondition = VehicleCondition.GOOD
    transmission: TransmissionType = TransmissionType.AUTOMATIC
    fuel_type: FuelType = FuelType.GASOLINE


class VehicleUpdateRequest(BaseModel):
    vin: str | None = None
    make: str | None = Field(default=None, min_length=1, max_length=100)
    model: str | None = Field(default=None, min_length=1, max_length=100)
    year: int | None = None
    mileage: int | None = None
    color: str | None = Field(default=None, min_length=1, max_length=50)
    condition: VehicleCondition | None = None
    transmission: TransmissionType | None = None
    fuel_type: FuelType | None = None


class ValuationCreateRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    vehicle_id: str
    estimated_value: float
    min_value: float
    max_value: float
    source: ValuationSource = ValuationSource.EXTERNAL_API
    metadata: dict[str, Any] | None = None


class LoanApplicationCreateRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    vehicle_id: str
    valuation_id: str
    loan_amount: float
    interest_rate: float
    term_months: int


class LoanApplicationUpdateRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    loan_amount: float | None = None
    interest_rate: float | None = None
    term_months: int | None = None
    status: LoanApplicationStatus | None = None


class LoanStatusRequest(BaseModel):
    status: LoanApplicationStatus


class OfferCreateRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    loan_application_id: str
    interest_rate: float
    offered_amount: float | None = None
    loan_term: int | None = None
    expiration_hours: int | None = None


class OfferStatusRequest(BaseModel):
    status: OfferStatus


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Metrics ─────────────────────────────────────────────────────────

_counters: dict[str, int] = defaultdict(int)
_latencies: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _latencies[name].append(seconds)
    _counters[f"{name}_count"] += 1


def _latency_summary(values: list[float]) -> dict[str, float]:
    ordered = sorted(values)
    n = len(ordered)
    return {
        "count": n,
        "p50_ms": round(ordered[n // 2] * 1000, 1) if n else 0,
        "p95_ms": round(ordered[min(int(n * 0.95), n - 1)] * 1000, 1) if n else 0,
    }


# ── Error mapping ───────────────────────────────────────────────────

_ERROR_STATUS: tuple[tuple[type[OriginationError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Conflict, status.HTTP_409_CONFLICT),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (BusinessRuleViolation, status.HTTP_400_BAD_REQUEST),
    (ConsistencyError, status.HTTP_400_BAD_REQUEST),
    (InvalidArgument, status.HTTP_400_BAD_REQUEST),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: OriginationError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ── App Factory ─────────────────────────────────────────────────────

def create_app() -> FastAPI:
    settings = ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    cache = RedisCache(redis_url=settings.redis_url)
    store = OriginationStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
        fallback_queue_size=settings.kafka_fallback_queue_size,
    )
    service = LoanOriginationService(
        store=store,
        limits=settings.lending_limits(),
        bus=kafka,
        cache=cache,
        schedule_ttl_seconds=settings.schedule_cache_ttl_seconds,
    )

    stop_event = asyncio.Event()

    async def _sweep_handler(event: dict[str, Any]) -> None:
        expired = await service.expire_overdue_offers()
        _counters["offers_expired"] += expired
        log_event(logger, "Sweep trigger handled", source=event.get("source"), expired=expired)

    async def _trigger_sweep() -> None:
        await kafka.publish(SWEEP_TRIGGERS_TOPIC, {"source": "scheduler"})

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()

        scheduler = None
        if settings.sweep_enabled:
            scheduler = build_expiration_sweep_scheduler(settings.sweep_interval_minutes, _trigger_sweep)
            scheduler.start()

        consumer_task = asyncio.create_task(kafka.consume_forever(SWEEP_TRIGGERS_TOPIC, _sweep_handler, stop_event))
        try:
            yield
        finally:
            stop_event.set()
            consumer_task.cancel()
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Vehicle Loan Origination API", version="1.0.0", lifespan=lifespan)
    app.state.service = service

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Response:
        cid = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id.set(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response

    @app.exception_handler(OriginationError)
    async def origination_error_handler(_: Request, exc: OriginationError) -> JSONResponse:
        code = status_for(exc)
        level = logging.ERROR if code >= 500 else logging.WARNING
        log_event(logger, "Request refused", level=level, error=exc.code, detail=exc.message)
        _counters[f"errors_{exc.code}"] += 1
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        # rejected input may be NaN or inf, which JSON cannot carry back
        errors = [{k: v for k, v in err.items() if k != "input"} for err in exc.errors()]
        _counters["errors_validation"] += 1
        return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})

    # ── Vehicles ────────────────────────────────────────────────────

    @app.post("/vehicles", status_code=status.HTTP_201_CREATED)
    async def create_vehicle(req: VehicleCreateRequest) -> dict[str, Any]:
        vehicle = await service.register_vehicle(**req.model_dump())
        _counters["vehicles_registered"] += 1
        return to_record(vehicle)

    @app.get("/vehicles")
    async def list_vehicles(
        make: str | None = None,
        model: str | None = None,
        year: int | None = None,
        year_min: int | None = Query(default=None, ge=1900),
        year_max: int | None = Query(default=None, le=2030),
        mileage_min: int | None = Query(default=None, ge=0),
        mileage_max: int | None = Query(default=None, ge=0),
        condition: VehicleCondition | None = None,
        transmission: TransmissionType | None = None,
        fuel_type: FuelType | None = None,
        color: str | None = None,
    ) -> list[dict[str, Any]]:
        search = VehicleSearch(
            make=make,
            model=model,
            year=year,
            year_min=year_min,
            year_max=year_max,
            mileage_min=mileage_min,
            mileage_max=mileage_max,
            condition=condition,
            transmission=transmission,
            fuel_type=fuel_type,
            color=color,
        )
        return [to_record(v) for v in await service.list_vehicles(search)]

    @app.get("/vehicles/vin/{vin}")
    async def get_vehicle_by_vin(vin: str) -> dict[str, Any]:
        return to_record(await service.get_vehicle_by_vin(vin))

    @app.get("/vehicles/{vehicle_id}")
    async def get_vehicle(vehicle_id: str) -> dict[str, Any]:
        return to_record(await service.get_vehicle(vehicle_id))

    @app.patch("/vehicles/{vehicle_id}")
    async def update_vehicle(vehicle_id: str, req: VehicleUpdateRequest) -> dict[str, Any]:
        return to_record(await service.update_vehicle(vehicle_id, **req.model_dump(exclude_none=True)))

    @app.delete("/vehicles/{vehicle_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_vehicle(vehicle_id: str) -> Response:
        await service.delete_vehicle(vehicle_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ── Valuations ──────────────────────────────────────────────────

    @app.post("/valuations", status_code=status.HTTP_201_CREATED)
    async def create_valuation(req: ValuationCreateRequest) -> dict[str, Any]:
        return to_record(await service.record_valuation(**req.model_dump()))

    @app.get("/valuations/{valuation_id}")
    async def get_valuation(valuation_id: str) -> dict[str, Any]:
        return to_record(await service.get_valuation(valuation_id))

    @app.delete("/valuations/{valuation_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_valuation(valuation_id: str) -> Response:
        await service.delete_valuation(valuation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/valuations/{valuation_id}/loan-applications")
    async def list_valuation_loan_applications(valuation_id: str) -> list[dict[str, Any]]:
        return [to_record(a) for a in await service.list_loan_applications(valuation_id=valuation_id)]

    @app.get("/vehicles/{vehicle_id}/valuations")
    async def list_vehicle_valuations(vehicle_id: str) -> list[dict[str, Any]]:
        return [to_record(v) for v in await service.list_valuations(vehicle_id)]

    @app.get("/vehicles/{vehicle_id}/valuations/latest")
    async def latest_vehicle_valuation(vehicle_id: str) -> dict[str, Any]:
        return to_record(await service.latest_valuation(vehicle_id))

    # ── Loan applications ───────────────────────────────────────────

    @app.post("/loan-applications", status_code=status.HTTP_201_CREATED)
    async def create_loan_application(req: LoanApplicationCreateRequest) -> dict[str, Any]:
        application = await service.create_loan_application(**req.model_dump())
        _counters["loan_applications_created"] += 1
        return to_record(application)

    @app.get("/loan-applications")
    async def list_loan_applications(
        status: LoanApplicationStatus | None = None,
        vehicle_id: str | None = None,
        valuation_id: str | None = None,
    ) -> list[dict[str, Any]]:
        applications = await service.list_loan_applications(
            status=status, vehicle_id=vehicle_id, valuation_id=valuation_id
        )
        return [to_record(a) for a in applications]

    @app.get("/loan-applications/{application_id}")
    async def get_loan_application(application_id: str) -> dict[str, Any]:
        return to_record(await service.get_loan_application(application_id))

    @app.patch("/loan-applications/{application_id}")
    async def update_loan_application(application_id: str, req: LoanApplicationUpdateRequest) -> dict[str, Any]:
        changes = LoanApplicationChanges(**req.model_dump())
        return to_record(await service.update_loan_application(application_id, changes))

    @app.patch("/loan-applications/{application_id}/status")
    async def update_loan_application_status(application_id: str, req: LoanStatusRequest) -> dict[str, Any]:
        return to_record(await service.transition_loan_application(application_id, req.status))

    @app.post("/loan-applications/{application_id}/review")
    async def review_loan_application(application_id: str) -> dict[str, Any]:
        return to_record(await service.review_loan_application(application_id))

    @app.post("/loan-applications/{application_id}/approve")
    async def approve_loan_application(application_id: str) -> dict[str, Any]:
        application = await service.approve_loan_application(application_id)
        _counters["loan_applications_approved"] += 1
        return to_record(application)

    @app.post("/loan-applications/{application_id}/reject")
    async def reject_loan_application(application_id: str) -> dict[str, Any]:
        application = await service.reject_loan_application(application_id)
        _counters["loan_applications_rejected"] += 1
        return to_record(application)

    @app.post("/loan-applications/{application_id}/cancel")
    async def cancel_loan_application(application_id: str) -> dict[str, Any]:
        return to_record(await service.cancel_loan_application(application_id))

    @app.delete("/loan-applications/{application_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_loan_application(application_id: str) -> Response:
        await service.delete_loan_application(application_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/loan-applications/{application_id}/payment")
    async def loan_application_payment(application_id: str) -> dict[str, Any]:
        return (await service.loan_payment(application_id)).to_dict()

    @app.get("/loan-applications/{application_id}/schedule")
    async def loan_application_schedule(application_id: str) -> dict[str, Any]:
        return (await service.loan_schedule(application_id)).to_dict()

    # ── Offers ──────────────────────────────────────────────────────

    @app.post("/offers", status_code=status.HTTP_201_CREATED)
    async def create_offer(req: OfferCreateRequest) -> dict[str, Any]:
        t0 = time.monotonic()
        terms = OfferTerms(
            interest_rate=req.interest_rate,
            offered_amount=req.offered_amount,
            loan_term=req.loan_term,
            expiration_hours=req.expiration_hours,
        )
        offer = await service.create_offer(req.loan_application_id, terms)
        _record_latency("create_offer", time.monotonic() - t0)
        _counters["offers_created"] += 1
        return to_record(offer)

    @app.get("/offers")
    async def list_offers(status: OfferStatus | None = None) -> list[dict[str, Any]]:
        return [to_record(o) for o in await service.list_offers(status=status)]

    @app.post("/offers/expire-old")
    async def expire_old_offers() -> dict[str, Any]:
        expired = await service.expire_overdue_offers()
        _counters["offers_expired"] += expired
        return {"expired": expired}

    @app.get("/offers/loan/{loan_application_id}")
    async def offers_for_loan_application(loan_application_id: str) -> list[dict[str, Any]]:
        return [to_record(o) for o in await service.offers_for_loan_application(loan_application_id)]

    @app.get("/offers/{offer_id}")
    async def get_offer(offer_id: str) -> dict[str, Any]:
        return to_record(await service.get_offer(offer_id))

    @app.patch("/offers/{offer_id}/status")
    async def update_offer_status(offer_id: str, req: OfferStatusRequest) -> dict[str, Any]:
        return to_record(await service.transition_offer(offer_id, req.status))

    @app.post("/offers/{offer_id}/accept")
    async def accept_offer(offer_id: str) -> dict[str, Any]:
        offer = await service.accept_offer(offer_id)
        _counters["offers_accepted"] += 1
        return to_record(offer)

    @app.post("/offers/{offer_id}/decline")
    async def decline_offer(offer_id: str) -> dict[str, Any]:
        offer = await service.decline_offer(offer_id)
        _counters["offers_declined"] += 1
        return to_record(offer)

    @app.delete("/offers/{offer_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_offer(offer_id: str) -> Response:
        await service.delete_offer(offer_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/offers/{offer_id}/schedule", response_model=None)
    async def offer_schedule(offer_id: str, format: Literal["json", "csv"] = "json") -> Response | dict[str, Any]:
        calculation = await service.offer_schedule(offer_id)
        if format == "csv":
            return Response(
                content=schedule_csv(calculation),
                media_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="offer-{offer_id}-schedule.csv"'},
            )
        return calculation.to_dict()

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        return {
            "counters": dict(_counters),
            "latency": {name: _latency_summary(values) for name, values in _latencies.items()},
        }

    return app


app = create_app()
