import functools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from .image_resolver import ImageResolver, ImageSlot
from .marketplace import (
    EventSummary,
    MarketEvent,
    MarketplaceClient,
    MarketStats,
    PriceResult,
    market_stats,
    summarize_event,
)
from .records import CatalogRecord

logger = logging.getLogger(__name__)

SORT_FIELDS = ("title", "mint_date", "type", "edition_size", "platform", "collaborator")
DEFAULT_SORT_FIELD = "mint_date"
DEFAULT_SORT_DIRECTION = "desc"
DETAIL_EVENT_DAYS = 30


class CatalogFilters(BaseModel):
    search: Optional[str] = None
    platform: Optional[str] = None
    type: Optional[str] = None
    collaborator: Optional[str] = None


class CatalogPage(BaseModel):
    total: int
    page: int
    page_size: int
    records: List[CatalogRecord]


class RecordDetail(BaseModel):
    record: CatalogRecord
    price: PriceResult
    events: List[MarketEvent]
    stats: MarketStats
    price_display: str
    activity: List[EventSummary] = []

    @classmethod
    def build(cls, record: CatalogRecord, price: PriceResult, events: List[MarketEvent]) -> "RecordDetail":
        return cls(
            record=record,
            price=price,
            events=events,
            stats=market_stats(events),
            price_display=price.display(),
            activity=[summarize_event(e) for e in events],
        )


def build_predicate(filters: CatalogFilters) -> Callable[[CatalogRecord], bool]:
    term = (filters.search or "").strip().lower()

    def predicate(record: CatalogRecord) -> bool:
        if term:
            haystack = (record.title, record.collection_name, record.platform,
                        record.type.value, record.collaborator)
            if not any(term in (value or "").lower() for value in haystack):
                return False
        if filters.platform and record.platform != filters.platform:
            return False
        if filters.type and record.type.value != filters.type:
            return False
        if filters.collaborator and record.collaborator != filters.collaborator:
            return False
        return True

    return predicate


def _sort_value(record: CatalogRecord, field: str):
    if field == "edition_size":
        return record.edition_count
    if field == "type":
        return record.type.value
    return getattr(record, field) or ""


def build_comparator(field: str, direction: str = "asc") -> Callable[[CatalogRecord, CatalogRecord], int]:
    """Comparator for ``field``; unparseable mint dates are equal to each other and lowest."""
    if field not in SORT_FIELDS:
        raise ValueError(f"Unknown sort field: {field}")
    if direction not in ("asc", "desc"):
        raise ValueError(f"Unknown sort direction: {direction}")
    sign = 1 if direction == "asc" else -1

    def compare(a: CatalogRecord, b: CatalogRecord) -> int:
        if field == "mint_date":
            ta, tb = a.mint_timestamp, b.mint_timestamp
            if ta is None and tb is None:
                return 0
            if ta is None:
                return -sign
            if tb is None:
                return sign
            return sign * ((ta > tb) - (ta < tb))
        va, vb = _sort_value(a, field), _sort_value(b, field)
        return sign * ((va > vb) - (va < vb))

    return compare


def sort_records(records: Iterable[CatalogRecord], field: str = DEFAULT_SORT_FIELD,
                 direction: str = DEFAULT_SORT_DIRECTION) -> List[CatalogRecord]:
    # sorted() is stable, so equal keys keep file order
    return sorted(records, key=functools.cmp_to_key(build_comparator(field, direction)))


def facet_values(records: Iterable[CatalogRecord]) -> Dict[str, List[str]]:
    platforms: List[str] = []
    types: List[str] = []
    collaborators: List[str] = []
    for r in records:
        if r.platform and r.platform not in platforms:
            platforms.append(r.platform)
        if r.type.value not in types:
            types.append(r.type.value)
        if r.collaborator and r.collaborator not in collaborators:
            collaborators.append(r.collaborator)
    return {"platforms": platforms, "types": types, "collaborators": collaborators}


class CatalogView:
    """Catalog state owned by the application: records, visible image slots, market lookups."""

    def __init__(self, records: List[CatalogRecord], resolver: ImageResolver,
                 marketplace: MarketplaceClient, max_retries: int = 3, workers: int = 8):
        self.records = list(records)
        self._by_id = {r.record_id: r for r in self.records}
        self.resolver = resolver
        self.marketplace = marketplace
        self.max_retries = max_retries
        self.slots: Dict[int, ImageSlot] = {}
        self._slots_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="image-resolve")

    def close(self):
        self._pool.shutdown(wait=False)

    def get(self, record_id: int) -> Optional[CatalogRecord]:
        return self._by_id.get(record_id)

    def query(self, filters: Optional[CatalogFilters] = None, sort_field: str = DEFAULT_SORT_FIELD,
              direction: str = DEFAULT_SORT_DIRECTION, page: int = 1, page_size: int = 0) -> CatalogPage:
        predicate = build_predicate(filters or CatalogFilters())
        matched = sort_records([r for r in self.records if predicate(r)], sort_field, direction)
        if page_size > 0:
            start = (max(page, 1) - 1) * page_size
            shown = matched[start:start + page_size]
        else:
            shown = matched
        return CatalogPage(total=len(matched), page=max(page, 1), page_size=page_size, records=shown)

    def facets(self) -> Dict[str, List[str]]:
        return facet_values(self.records)

    # ---------- images ----------
    def _settle(self, slot: ImageSlot, step: Callable[[], object]):
        # a resolver bug costs this record its image, never the whole request
        try:
            step()
        except Exception:
            logger.exception("Image resolution failed for record %d", slot.record.record_id)
            slot.fall_back()

    def resolve_visible(self, record_ids: Iterable[int]) -> Dict[int, dict]:
        """Make the slot set match ``record_ids`` and resolve any new slots concurrently."""
        wanted = [rid for rid in dict.fromkeys(record_ids) if rid in self._by_id]
        with self._slots_lock:
            for rid in list(self.slots):
                if rid not in wanted:
                    del self.slots[rid]
            fresh = []
            for rid in wanted:
                if rid not in self.slots:
                    self.slots[rid] = ImageSlot(self._by_id[rid], self.resolver, self.max_retries)
                    fresh.append(self.slots[rid])
        futures = [(slot, self._pool.submit(slot.resolve)) for slot in fresh]
        for slot, future in futures:
            self._settle(slot, future.result)
        with self._slots_lock:
            # slots dropped while resolving are discarded
            return {rid: self.slots[rid].snapshot() for rid in wanted if rid in self.slots}

    def image(self, record_id: int) -> Optional[dict]:
        with self._slots_lock:
            slot = self.slots.get(record_id)
            if slot is None and record_id in self._by_id:
                slot = self.slots[record_id] = ImageSlot(self._by_id[record_id], self.resolver, self.max_retries)
        if slot is None:
            return None
        self._settle(slot, slot.resolve)
        return slot.snapshot()

    def report_render_failure(self, record_id: int, url: Optional[str] = None) -> Optional[dict]:
        with self._slots_lock:
            slot = self.slots.get(record_id)
        if slot is None:
            return None
        self._settle(slot, lambda: slot.render_failed(url))
        return slot.snapshot()

    # ---------- market ----------
    def detail(self, record_id: int) -> Optional[RecordDetail]:
        record = self.get(record_id)
        if record is None:
            return None
        if not record.is_market_addressable:
            return RecordDetail.build(record, PriceResult.not_listed(), [])
        price = self.marketplace.price_for(record)
        events = self.marketplace.recent_events_for_records([record], days_back=DETAIL_EVENT_DAYS)
        return RecordDetail.build(record, price, events.get(record.market_key, []))
