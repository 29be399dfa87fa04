"""
Price catalogue.

Plans are matched to provider products by keywords in the product name, so
products can be renamed or re-priced upstream without a deploy. Provider
failures fall back to configured prices instead of failing the request.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from paygate.core.config import settings
from paygate.core.errors import PaymentProviderError
from paygate.features.billing.provider import PaymentProvider, ProviderPrice
from paygate.features.entitlements.models import PlanId

logger = logging.getLogger("paygate")

PLAN_KEYWORDS = {
    PlanId.ONE_TIME: ("one-time", "one time", "single", "analysis"),
    PlanId.WEEKLY: ("weekly", "week", "7 day"),
    PlanId.MONTHLY: ("monthly", "month", "30 day"),
}


@dataclass(frozen=True)
class PriceList:
    currency: str
    one_time: float
    weekly: float
    monthly: float
    error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "currency": self.currency,
            "oneTime": self.one_time,
            "weekly": self.weekly,
            "monthly": self.monthly,
        }
        if self.error:
            body["error"] = self.error
        return body


def _find_by_keywords(prices: Sequence[ProviderPrice], keywords: Sequence[str]) -> Optional[float]:
    for price in prices:
        name = price.product_name.lower()
        if price.unit_amount and any(keyword in name for keyword in keywords):
            return price.unit_amount / 100
    return None


def fallback_prices(cfg=None, error: Optional[str] = None) -> PriceList:
    cfg = cfg or settings
    return PriceList(
        currency=cfg.PRICE_FALLBACK_CURRENCY,
        one_time=cfg.PRICE_FALLBACK_ONE_TIME,
        weekly=cfg.PRICE_FALLBACK_WEEKLY,
        monthly=cfg.PRICE_FALLBACK_MONTHLY,
        error=error,
    )


def resolve_prices(prices: List[ProviderPrice], cfg=None) -> PriceList:
    defaults = fallback_prices(cfg)
    priced = [p for p in prices if p.unit_amount]
    if not priced:
        raise ValueError("No active priced products found")

    def pick(plan: PlanId, default: float) -> float:
        found = _find_by_keywords(priced, PLAN_KEYWORDS[plan])
        return found if found is not None else default

    return PriceList(
        currency=(priced[0].currency or defaults.currency).upper(),
        one_time=pick(PlanId.ONE_TIME, defaults.one_time),
        weekly=pick(PlanId.WEEKLY, defaults.weekly),
        monthly=pick(PlanId.MONTHLY, defaults.monthly),
    )


def get_prices(provider: PaymentProvider, cfg=None) -> PriceList:
    try:
        return resolve_prices(provider.list_prices(), cfg)
    except (PaymentProviderError, ValueError) as exc:
        logger.error("prices.fetch_failed", extra={"error": str(exc)})
        return fallback_prices(cfg, error="Failed to fetch prices from provider, using fallback")
