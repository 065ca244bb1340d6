import pytest

from catalog_backend.catalog_view import (
    CatalogFilters,
    CatalogView,
    build_comparator,
    build_predicate,
    facet_values,
    sort_records,
)
from catalog_backend.image_resolver import NO_IMAGE_PLACEHOLDER, UNAVAILABLE_PLACEHOLDER, ImageResolver, SlotState
from catalog_backend.marketplace import MarketplaceClient, PriceStatus
from catalog_backend.rate_limiter import TokenBucket
from catalog_backend.records import ArtworkType
from conftest import CONTRACT, FakeResponse, FakeSession, make_record


def titles(records):
    return [r.title for r in records]


@pytest.fixture
def records():
    return [
        make_record(0, title="b", mint_date="2021-05-01", edition_size="10", platform="Foundation",
                    type=ArtworkType.EDITION, collaborator="Someone"),
        make_record(1, title="a", mint_date="not a date", edition_size="open", platform="SuperRare"),
        make_record(2, title="c", mint_date="2020-01-01", edition_size="2", platform="Foundation",
                    collection_name="Waves Series"),
        make_record(3, title="d", mint_date="", edition_size="25", platform="Nifty",
                    type=ArtworkType.GENERATIVE),
    ]


def test_mint_date_sort_puts_unparseable_lowest(records):
    assert titles(sort_records(records, "mint_date", "asc")) == ["a", "d", "c", "b"]
    assert titles(sort_records(records, "mint_date", "desc")) == ["b", "c", "a", "d"]


def test_unparseable_dates_compare_equal(records):
    compare = build_comparator("mint_date", "asc")
    assert compare(records[1], records[3]) == 0
    assert compare(records[1], records[2]) < 0
    assert build_comparator("mint_date", "desc")(records[1], records[2]) > 0


def test_edition_size_sort_is_numeric_with_non_numeric_as_zero(records):
    assert titles(sort_records(records, "edition_size", "asc")) == ["a", "c", "b", "d"]
    assert titles(sort_records(records, "edition_size", "desc")) == ["d", "b", "c", "a"]


def test_string_sort(records):
    assert titles(sort_records(records, "title", "asc")) == ["a", "b", "c", "d"]
    assert titles(sort_records(records, "platform", "desc")) == ["a", "d", "b", "c"]


def test_bad_sort_arguments():
    with pytest.raises(ValueError):
        build_comparator("price", "asc")
    with pytest.raises(ValueError):
        build_comparator("title", "up")


def test_search_and_facet_filters(records):
    match = build_predicate(CatalogFilters(search="WAVES"))
    assert [r.record_id for r in records if match(r)] == [2]
    match = build_predicate(CatalogFilters(search="generative"))
    assert [r.record_id for r in records if match(r)] == [3]
    match = build_predicate(CatalogFilters(platform="Foundation", type="Edition"))
    assert [r.record_id for r in records if match(r)] == [0]
    match = build_predicate(CatalogFilters(collaborator="Someone"))
    assert [r.record_id for r in records if match(r)] == [0]
    assert all(build_predicate(CatalogFilters())(r) for r in records)


def test_facet_values(records):
    facets = facet_values(records)
    assert facets["platforms"] == ["Foundation", "SuperRare", "Nifty"]
    assert facets["types"] == ["Edition", "Unique", "Generative"]
    assert facets["collaborators"] == ["Someone"]


def make_view(records, get_routes=None, head_routes=None, max_retries=3):
    market = MarketplaceClient("http://proxy.test", session=FakeSession(get_routes=get_routes or {}))
    head_session = FakeSession(head_routes=head_routes or {})
    resolver = ImageResolver(["https://gw-a.test/ipfs/", "https://gw-b.test/ipfs/"],
                             marketplace=market, session=head_session)
    return CatalogView(records, resolver, market, max_retries=max_retries, workers=2), head_session


def test_query_filters_sorts_and_pages(records):
    view, _ = make_view(records)
    page = view.query(CatalogFilters(platform="Foundation"), "title", "asc")
    assert page.total == 2
    assert titles(page.records) == ["b", "c"]
    page = view.query(None, "title", "asc", page=2, page_size=3)
    assert page.total == 4
    assert titles(page.records) == ["d"]
    view.close()


def test_resolve_visible_tracks_the_visible_set():
    recs = [make_record(i, ipfs_image_ref=f"Qm{i}") for i in range(3)]
    view, heads = make_view(recs, head_routes={"https://gw-a.test": FakeResponse(200)})
    images = view.resolve_visible([0, 1, 99])
    assert set(images) == {0, 1}
    assert images[0]["url"] == "https://gw-a.test/ipfs/Qm0"
    assert images[1]["state"] == SlotState.RESOLVED.value

    images = view.resolve_visible([1, 2])
    assert set(view.slots) == {1, 2}
    # record 1 stayed visible, so it was not checked again
    assert heads.urls("HEAD").count("https://gw-a.test/ipfs/Qm1") == 1
    assert images[2]["url"] == "https://gw-a.test/ipfs/Qm2"
    view.close()


def test_render_failures_reach_terminal_placeholder():
    view, _ = make_view([make_record(0, ipfs_image_ref="Qm0")], head_routes={"https://gw": FakeResponse(200)})
    view.resolve_visible([0])
    snap = view.report_render_failure(0)
    assert snap["url"] == "https://gw-b.test/ipfs/Qm0"
    view.report_render_failure(0)
    snap = view.report_render_failure(0)
    assert snap["state"] == "unavailable"
    assert snap["url"] == UNAVAILABLE_PLACEHOLDER
    assert view.report_render_failure(5) is None
    view.close()


def test_detail_fetches_price_and_recent_events():
    record = make_record(0, contract_address=CONTRACT, token_id="1")
    routes = {
        "http://proxy.test/api/price/": FakeResponse(200, {"sell_orders": [{"current_price": "1000000000000000000"}]}),
        "http://proxy.test/api/events/": FakeResponse(200, {"asset_events": [
            {"event_type": "successful", "event_timestamp": "2099-01-01T00:00:00",
             "ending_price": "2000000000000000000", "payment_token": {"decimals": 18, "symbol": "ETH"},
             "winner_account": {"address": "0xb1b1b1b1b1b1b1b1b1b1b1b1b1b1b1b1b1b1c0de"}},
        ]}),
    }
    view, _ = make_view([record], get_routes=routes)
    detail = view.detail(0)
    assert detail.price.status == PriceStatus.LISTED
    assert detail.price.price_eth == 1.0
    assert len(detail.events) == 1
    assert detail.stats.total_sales == 1
    assert detail.stats.total_volume == 2.0
    assert detail.price_display == "Listed: 1.0000 ETH"
    row = detail.activity[0]
    assert row.kind == "Sold"
    assert row.date == "2099-01-01 00:00 UTC"
    assert row.price == "2.0000 ETH"
    assert row.buyer == "0xb1b1...c0de"
    assert row.transaction_url is None
    assert view.detail(42) is None
    view.close()


def test_detail_for_unaddressable_record_makes_no_calls():
    view, _ = make_view([make_record(0)])
    detail = view.detail(0)
    assert detail.price.status == PriceStatus.NOT_LISTED
    assert detail.events == []
    assert view.marketplace.session.calls == []
    view.close()


class FrozenClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = 0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps += 1
        self.now += seconds


def test_resolve_visible_does_not_wait_on_the_rate_limit():
    clock = FrozenClock()
    bucket = TokenBucket(rate_per_minute=8, clock=clock, sleep=clock.sleep)
    session = FakeSession(get_routes={
        "http://proxy.test/api/price/": FakeResponse(200, {"image_url": "https://market.test/art.png"}),
    })
    market = MarketplaceClient("http://proxy.test", session=session, limiter=bucket)
    resolver = ImageResolver(["https://gw-a.test/ipfs/"], marketplace=market, session=FakeSession())
    recs = [make_record(i, contract_address=CONTRACT, token_id=str(i)) for i in range(20)]
    view = CatalogView(recs, resolver, market, workers=4)

    images = view.resolve_visible(range(20))
    view.close()

    assert clock.now < 10
    assert clock.sleeps == 0
    assert len(images) == 20
    sources = [view.slots[i].last_resolution.source for i in range(20)]
    assert sources.count("marketplace") == 8
    # records refused a token skip the marketplace source
    assert sum(img["url"] == NO_IMAGE_PLACEHOLDER for img in images.values()) == 12
    assert all(img["state"] == SlotState.RESOLVED.value for img in images.values())


class FlakyResolver(ImageResolver):
    def resolve(self, record, exclude=()):
        if record.record_id == 1:
            raise RuntimeError("resolver exploded")
        return super().resolve(record, exclude)


def test_one_failing_slot_does_not_fail_the_visible_set():
    recs = [make_record(i, ipfs_image_ref=f"Qm{i}") for i in range(3)]
    resolver = FlakyResolver(["https://gw-a.test/ipfs/"],
                             session=FakeSession(head_routes={"https://gw-a.test": FakeResponse(200)}))
    view = CatalogView(recs, resolver, MarketplaceClient("http://proxy.test", session=FakeSession()), workers=2)

    images = view.resolve_visible([0, 1, 2])
    assert images[0]["url"] == "https://gw-a.test/ipfs/Qm0"
    assert images[2]["url"] == "https://gw-a.test/ipfs/Qm2"
    assert images[1]["url"] == NO_IMAGE_PLACEHOLDER
    assert images[1]["state"] == SlotState.RESOLVED.value
    assert images[1]["source"] == "placeholder"

    # the single-record lookup and render reports degrade the same way
    assert view.image(1)["url"] == NO_IMAGE_PLACEHOLDER
    snap = view.report_render_failure(1, NO_IMAGE_PLACEHOLDER)
    assert snap["url"] == NO_IMAGE_PLACEHOLDER
    assert snap["attempt_count"] == 1
    view.close()
