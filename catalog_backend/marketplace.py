"""Marketplace price and event client.

Talks to the same-origin proxy (see ``proxy.py``), never to the upstream
marketplace directly, so the API key stays on the server. Every public call
degrades instead of raising: prices become ``PriceResult.error()`` and event
lookups become an empty list.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import requests
from pydantic import BaseModel

from .rate_limiter import TokenBucket
from .records import ArtworkType, CatalogRecord

logger = logging.getLogger(__name__)

WEI_DECIMALS = 18
MAX_EVENT_PAGES = 50
ETHERSCAN_TX_URL = "https://etherscan.io/tx/"


class MarketplaceError(Exception):
    pass


# ---------- MODELS ----------
class EventKind(str, Enum):
    LISTED = "Listed"
    SOLD = "Sold"
    CANCELLED = "Cancelled"
    BID_PLACED = "Bid Placed"
    BID_WITHDRAWN = "Bid Withdrawn"
    TRANSFERRED = "Transferred"
    APPROVED = "Approved"
    OTHER = "Other"


# upstream event_type -> EventKind
EVENT_TYPES: Dict[str, EventKind] = {
    "created": EventKind.LISTED,
    "successful": EventKind.SOLD,
    "cancelled": EventKind.CANCELLED,
    "bid_entered": EventKind.BID_PLACED,
    "bid_withdrawn": EventKind.BID_WITHDRAWN,
    "transfer": EventKind.TRANSFERRED,
    "approve": EventKind.APPROVED,
}


class PriceStatus(str, Enum):
    LISTED = "Listed"
    FLOOR = "Floor"
    NOT_LISTED = "NotListed"
    ERROR = "Error"


class PriceResult(BaseModel):
    status: PriceStatus
    price_eth: Optional[float] = None

    @classmethod
    def listed(cls, price_eth: float) -> "PriceResult":
        return cls(status=PriceStatus.LISTED, price_eth=price_eth)

    @classmethod
    def floor(cls, price_eth: float) -> "PriceResult":
        return cls(status=PriceStatus.FLOOR, price_eth=price_eth)

    @classmethod
    def not_listed(cls) -> "PriceResult":
        return cls(status=PriceStatus.NOT_LISTED)

    @classmethod
    def error(cls) -> "PriceResult":
        return cls(status=PriceStatus.ERROR)

    @property
    def label(self) -> str:
        if self.status in (PriceStatus.LISTED, PriceStatus.FLOOR):
            return self.status.value
        return "N/A" if self.status == PriceStatus.NOT_LISTED else "Error"

    def display(self) -> str:
        if self.price_eth is None:
            return self.label
        return f"{self.label}: {self.price_eth:.4f} ETH"


class MarketEvent(BaseModel):
    kind: EventKind
    raw_type: str
    timestamp: Optional[datetime] = None
    price_wei: Optional[str] = None
    price_eth: Optional[float] = None
    payment_symbol: Optional[str] = None
    decimals: Optional[int] = None
    usd_price: Optional[float] = None
    seller: Optional[str] = None
    buyer: Optional[str] = None
    transaction_hash: Optional[str] = None
    token_id: Optional[str] = None

    @classmethod
    def from_upstream(cls, js: Dict[str, Any]) -> "MarketEvent":
        raw_type = js.get("event_type") or ""
        token = js.get("payment_token") or {}
        decimals = _to_int(token.get("decimals"))
        price_wei = js.get("ending_price") or js.get("total_price")
        price_eth = None
        if price_wei and decimals is not None:
            price_eth = _to_eth(price_wei, decimals)
        return cls(
            kind=EVENT_TYPES.get(raw_type, EventKind.OTHER),
            raw_type=raw_type,
            timestamp=_parse_timestamp(js.get("event_timestamp")),
            price_wei=str(price_wei) if price_wei else None,
            price_eth=price_eth,
            payment_symbol=token.get("symbol"),
            decimals=decimals,
            usd_price=_to_float(token.get("usd_price")),
            seller=(js.get("seller") or {}).get("address"),
            buyer=(js.get("winner_account") or {}).get("address"),
            transaction_hash=(js.get("transaction") or {}).get("hash"),
            token_id=(js.get("asset") or {}).get("token_id"),
        )


class EventFilters(BaseModel):
    event_type: Optional[str] = None
    occurred_after: Optional[datetime] = None
    occurred_before: Optional[datetime] = None
    cursor: Optional[str] = None
    limit: Optional[int] = None

    def to_params(self, include_limit: bool = True) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.event_type:
            params["event_type"] = self.event_type
        if self.occurred_after:
            params["occurred_after"] = self.occurred_after.isoformat()
        if self.occurred_before:
            params["occurred_before"] = self.occurred_before.isoformat()
        if self.cursor:
            params["cursor"] = self.cursor
        if include_limit and self.limit:
            params["limit"] = str(self.limit)
        return params


class MarketStats(BaseModel):
    total_sales: int = 0
    total_volume: float = 0.0
    average_price: float = 0.0
    lowest_sale: float = 0.0
    unique_buyers: int = 0


class EventSummary(BaseModel):
    """One activity row, formatted for display."""
    kind: str
    date: str
    price: Optional[str] = None
    seller: Optional[str] = None
    buyer: Optional[str] = None
    transaction_url: Optional[str] = None


# ---------- HELPERS ----------
def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_eth(wei: Any, decimals: int = WEI_DECIMALS) -> Optional[float]:
    amount = _to_float(wei)
    if amount is None:
        return None
    return amount / (10 ** int(decimals))


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_price(price_wei: Optional[str], decimals: Optional[int] = None,
                 symbol: Optional[str] = None, usd_price: Optional[float] = None) -> str:
    if not price_wei or decimals is None:
        return "N/A"
    amount = _to_eth(price_wei, decimals)
    if amount is None:
        return "N/A"
    symbol = symbol or "ETH"
    if usd_price:
        return f"{amount:.4f} {symbol} (${amount * usd_price:.2f})"
    return f"{amount:.4f} {symbol}"


def format_address(address: Optional[str]) -> str:
    if not address:
        return ""
    return f"{address[:6]}...{address[-4:]}"


def format_date(timestamp: Optional[datetime]) -> str:
    if timestamp is None:
        return ""
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def summarize_event(event: MarketEvent) -> EventSummary:
    price = None
    if event.price_wei:
        price = format_price(event.price_wei, event.decimals, event.payment_symbol, event.usd_price)
    return EventSummary(
        kind=event.kind.value,
        date=format_date(event.timestamp),
        price=price,
        seller=format_address(event.seller) or None,
        buyer=format_address(event.buyer) or None,
        transaction_url=f"{ETHERSCAN_TX_URL}{event.transaction_hash}" if event.transaction_hash else None,
    )


def market_stats(events: Iterable[MarketEvent]) -> MarketStats:
    sales = [e for e in events if e.kind == EventKind.SOLD]
    prices = [e.price_eth for e in sales if e.price_eth is not None]
    volume = sum(prices)
    return MarketStats(
        total_sales=len(sales),
        total_volume=volume,
        average_price=volume / len(sales) if sales else 0.0,
        lowest_sale=min(prices) if prices else 0.0,
        unique_buyers=len({e.buyer for e in sales if e.buyer}),
    )


def _newest_first(events: List[MarketEvent]) -> List[MarketEvent]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(events, key=lambda e: e.timestamp or epoch, reverse=True)


# ---------- CLIENT ----------
class MarketplaceClient:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 limiter: Optional[TokenBucket] = None, timeout: float = 15):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"accept": "application/json"})
        self.limiter = limiter
        self.timeout = timeout

    def _get(self, path: str, params: Optional[Dict[str, str]] = None, block: bool = True) -> Dict[str, Any]:
        """GET ``path`` from the proxy and return its JSON object.

        With ``block=False`` an empty rate-limit bucket fails the call at once
        instead of waiting for a token.
        """
        if self.limiter is not None:
            if block:
                self.limiter.wait(1)
            elif not self.limiter.acquire(1):
                raise MarketplaceError("Marketplace rate limit reached")
        url = f"{self.base_url}{path}"
        try:
            r = self.session.get(url, params=params or {}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise MarketplaceError(f"Marketplace request failed: {exc}") from exc
        if r.status_code != 200:
            raise MarketplaceError(f"Marketplace API error: {r.status_code}")
        try:
            data = r.json()
        except ValueError as exc:
            raise MarketplaceError("Marketplace API returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise MarketplaceError(f"Marketplace API returned {type(data).__name__}, expected an object")
        return data

    def fetch_asset(self, contract_address: str, token_id: str, block: bool = True) -> Dict[str, Any]:
        return self._get(f"/api/price/{contract_address}/{token_id}", block=block)

    def fetch_image_url(self, contract_address: str, token_id: str) -> Optional[str]:
        """Return the image URL embedded in the token's metadata, if any.

        Never waits on the rate limiter; a missing token is reported as a
        MarketplaceError so image resolution moves on to the next source.
        """
        asset = self.fetch_asset(contract_address, token_id, block=False)
        for key in ("image_original_url", "image_url", "image_preview_url"):
            if asset.get(key):
                return asset[key]
        return None

    def fetch_listing_or_floor_price(self, contract_address: Optional[str], token_id: Optional[str],
                                     is_unique: bool) -> PriceResult:
        """Unique tokens report their own cheapest listing; everything else the collection floor."""
        if not contract_address or not token_id:
            return PriceResult.not_listed()
        try:
            if is_unique:
                price = _cheapest_listing(self.fetch_asset(contract_address, token_id))
                return PriceResult.listed(price) if price is not None else PriceResult.not_listed()
            price = _floor_price(self._get(f"/api/floor/{contract_address}"))
            return PriceResult.floor(price) if price is not None else PriceResult.not_listed()
        except MarketplaceError as exc:
            logger.warning("Price lookup failed for %s/%s: %s", contract_address, token_id, exc)
            return PriceResult.error()

    def price_for(self, record: CatalogRecord) -> PriceResult:
        return self.fetch_listing_or_floor_price(
            record.contract_address, record.token_id, record.type == ArtworkType.UNIQUE
        )

    def _events_page(self, contract_address: str, token_id: Optional[str],
                     filters: EventFilters) -> Dict[str, Any]:
        if token_id:
            return self._get(f"/api/events/{contract_address}/{token_id}", filters.to_params(include_limit=False))
        return self._get(f"/api/collection-events/{contract_address}", filters.to_params())

    def fetch_events(self, contract_address: str, token_id: Optional[str] = None,
                     filters: Optional[EventFilters] = None) -> List[MarketEvent]:
        """Token events when ``token_id`` is given, collection events otherwise. Newest first."""
        try:
            page = self._events_page(contract_address, token_id, filters or EventFilters())
        except MarketplaceError as exc:
            logger.warning("Event lookup failed for %s/%s: %s", contract_address, token_id, exc)
            return []
        return _newest_first([MarketEvent.from_upstream(e) for e in page.get("asset_events") or []])

    def fetch_all_events(self, contract_address: str, token_id: str,
                         event_type: Optional[str] = None) -> List[MarketEvent]:
        events: List[MarketEvent] = []
        cursor: Optional[str] = None
        seen = set()
        try:
            for _ in range(MAX_EVENT_PAGES):
                page = self._events_page(contract_address, token_id, EventFilters(event_type=event_type, cursor=cursor))
                events.extend(MarketEvent.from_upstream(e) for e in page.get("asset_events") or [])
                cursor = page.get("next_cursor")
                if not cursor or cursor in seen:
                    break
                seen.add(cursor)
        except MarketplaceError as exc:
            logger.warning("Event history failed for %s/%s: %s", contract_address, token_id, exc)
            return []
        return _newest_first(events)

    def recent_events_for_records(self, records: Iterable[CatalogRecord], days_back: int = 30,
                                  now: Optional[datetime] = None) -> Dict[str, List[MarketEvent]]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days_back)
        out: Dict[str, List[MarketEvent]] = {}
        for record in records:
            if not record.is_market_addressable:
                continue
            out[record.market_key] = self.fetch_events(
                record.contract_address, record.token_id, EventFilters(occurred_after=cutoff)
            )
        return out


def _cheapest_listing(asset: Dict[str, Any]) -> Optional[float]:
    prices: List[float] = []
    for order in (asset.get("sell_orders") or []) + (asset.get("seaport_sell_orders") or []):
        decimals = (order.get("payment_token_contract") or {}).get("decimals", WEI_DECIMALS)
        price = _to_eth(order.get("current_price"), decimals)
        if price is not None:
            prices.append(price)
    return min(prices) if prices else None


def _floor_price(contract: Dict[str, Any]) -> Optional[float]:
    stats = (contract.get("collection") or {}).get("stats") or contract.get("stats") or {}
    return _to_float(stats.get("floor_price"))
