from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from origination.data_models import Offer, OfferStatus
from origination.state_machines import transition_offer

logger = logging.getLogger(__name__)


class ExpiringOfferStore(Protocol):
    async def find_active_offers_expired_before(self, now: datetime) -> list[Offer]: ...

    async def update_offer_status(
        self, offer: Offer, expected_status: OfferStatus
    ) -> Offer | None: ...


def find_overdue_offers(offers: Iterable[Offer], now: datetime) -> list[Offer]:
    return [o for o in offers if o.status is OfferStatus.ACTIVE and o.expires_at < now]


async def sweep_expired_offers(store: ExpiringOfferStore, now: datetime) -> int:
    """Move every overdue active offer to ``expired``; returns how many moved.

    Status writes are compare-and-set against ``active``, so an offer accepted
    or declined concurrently is skipped rather than overwritten.
    """
    candidates = find_overdue_offers(await store.find_active_offers_expired_before(now), now)
    expired = 0
    for offer in candidates:
        updated = await store.update_offer_status(
            transition_offer(offer, OfferStatus.EXPIRED, now), expected_status=OfferStatus.ACTIVE
        )
        if updated is None:
            logger.info("Offer %s changed status during sweep; skipped", offer.id)
            continue
        expired += 1
    if expired:
        logger.info("Expired %d overdue offer(s)", expired)
    return expired
