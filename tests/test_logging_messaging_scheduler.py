import asyncio
import json
import logging
from datetime import timedelta

import pytest

from origination.scheduler import SWEEP_JOB_ID, build_expiration_sweep_scheduler
from service.logging_config import JSONFormatter, configure_logging, correlation_id, log_event
from service.messaging import OFFER_EVENTS_TOPIC, SWEEP_TRIGGERS_TOPIC, KafkaBus
from service.settings import ServiceSettings


# ── Logging ─────────────────────────────────────────────────────────


def test_json_formatter_includes_correlation_and_data():
    token = correlation_id.set("cid-42")
    try:
        record = logging.LogRecord("origination", logging.INFO, __file__, 1, "Offer created", None, None)
        record.extra_data = {"offer_id": "off-1"}
        entry = json.loads(JSONFormatter().format(record))
    finally:
        correlation_id.reset(token)
    assert entry["message"] == "Offer created"
    assert entry["correlation_id"] == "cid-42"
    assert entry["data"] == {"offer_id": "off-1"}


def test_log_event_attaches_structured_data(caplog):
    logger = logging.getLogger("tests.origination")
    with caplog.at_level(logging.INFO, logger="tests.origination"):
        log_event(logger, "Offer expired", offer_id="off-9")
    assert caplog.records[-1].extra_data == {"offer_id": "off-9"}


def test_configure_logging_quiets_drivers():
    configure_logging(level="INFO", fmt="text")
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert logging.getLogger("aiokafka").level == logging.WARNING


# ── Messaging ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_full_fallback_queue_drops_oldest_event(caplog):
    bus = KafkaBus(bootstrap_servers="localhost:65535", client_id="test-client", fallback_queue_size=2)
    with caplog.at_level(logging.WARNING, logger="service.messaging"):
        for n in range(4):
            await bus.publish(OFFER_EVENTS_TOPIC, {"n": n})
    assert bus.pending(OFFER_EVENTS_TOPIC) == [{"n": 2}, {"n": 3}]
    assert sum("dropped the oldest event" in r.getMessage() for r in caplog.records) == 2


def test_fallback_queue_size_must_be_positive():
    with pytest.raises(ValueError):
        KafkaBus(bootstrap_servers="localhost:65535", client_id="test-client", fallback_queue_size=0)


@pytest.mark.asyncio
async def test_publish_falls_back_to_in_process_queue():
    bus = KafkaBus(bootstrap_servers="localhost:65535", client_id="test-client")
    await bus.publish(OFFER_EVENTS_TOPIC, {"event": "offer.created"}, key="off-1")
    assert bus.pending(OFFER_EVENTS_TOPIC) == [{"event": "offer.created"}]
    assert bus.pending(OFFER_EVENTS_TOPIC) == []
    assert await bus.ping() is False


@pytest.mark.asyncio
async def test_sweep_trigger_consumed_from_fallback_queue():
    bus = KafkaBus(bootstrap_servers="localhost:65535", client_id="test-client")
    seen = []
    stop = asyncio.Event()

    async def handler(event):
        seen.append(event)
        stop.set()

    consumer_task = asyncio.create_task(bus.consume_forever(SWEEP_TRIGGERS_TOPIC, handler, stop))
    await bus.publish(SWEEP_TRIGGERS_TOPIC, {"source": "test"})
    await asyncio.wait_for(consumer_task, timeout=3)
    assert seen == [{"source": "test"}]


# ── Scheduler ───────────────────────────────────────────────────────


def test_sweep_scheduler_has_single_interval_job():
    async def job():
        return None

    scheduler = build_expiration_sweep_scheduler(15, job)
    scheduled = scheduler.get_job(SWEEP_JOB_ID)
    assert scheduled is not None
    assert scheduled.trigger.interval == timedelta(minutes=15)
    assert scheduled.max_instances == 1
    assert scheduled.coalesce is True


def test_sweep_scheduler_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        build_expiration_sweep_scheduler(0, lambda: None)


# ── Settings ────────────────────────────────────────────────────────


def test_settings_build_lending_limits(monkeypatch):
    monkeypatch.setenv("MIN_LOAN_AMOUNT", "2000")
    monkeypatch.setenv("MAX_LTV_PERCENT", "75")
    monkeypatch.setenv("OFFER_EXPIRATION_HOURS", "72")
    limits = ServiceSettings().lending_limits()
    assert limits.min_loan_amount == 2000
    assert limits.max_ltv_percent == 75
    assert limits.default_offer_expiration_hours == 72
    assert limits.min_offer_rate == 5.0
