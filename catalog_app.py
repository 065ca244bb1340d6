"""NFT catalog backend.

This FastAPI application loads the artwork catalog CSV once at startup,
serves a filterable/sortable catalog with per-record image resolution, and
proxies marketplace price and event data with a server-held API key. All
configuration comes from environment variables (see
``catalog_backend.config``).
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import requests
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from catalog_backend.catalog_routes import router as catalog_router
from catalog_backend.catalog_view import CatalogView
from catalog_backend.config import Settings, load_settings
from catalog_backend.image_resolver import ImageResolver
from catalog_backend.marketplace import MarketplaceClient
from catalog_backend.proxy import OpenSeaUpstream, router as proxy_router
from catalog_backend.rate_limiter import TokenBucket
from catalog_backend.records import CatalogRecord, load_catalog

logger = logging.getLogger(__name__)


def _load_records(path: str) -> List[CatalogRecord]:
    if not os.path.exists(path):
        logger.error("Catalog CSV not found at %s; serving an empty catalog", path)
        return []
    return load_catalog(path)


def create_app(
    settings: Optional[Settings] = None,
    records: Optional[List[CatalogRecord]] = None,
    upstream_session: Optional[requests.Session] = None,
    marketplace: Optional[MarketplaceClient] = None,
    resolver: Optional[ImageResolver] = None,
) -> FastAPI:
    """Build the application and wire its components.

    Args:
        settings: Configuration; read from the environment when omitted.
        records: Catalog records; loaded from ``settings.csv_path`` when omitted.
        upstream_session: HTTP session the proxy uses to reach the marketplace.
        marketplace: Rate-limited client the catalog uses for prices and events.
        resolver: Image resolver for catalog records. When omitted it gets its
            own marketplace client, without the rate limiter.

    Returns:
        The configured FastAPI application.
    """
    settings = settings or load_settings()
    if records is None:
        records = _load_records(settings.csv_path)
    if marketplace is None:
        marketplace = MarketplaceClient(
            settings.proxy_base_url,
            limiter=TokenBucket(rate_per_minute=settings.marketplace_rate_per_minute),
        )
    if resolver is None:
        # image lookups must not queue behind the price/event rate limit
        image_client = MarketplaceClient(marketplace.base_url, session=marketplace.session,
                                         timeout=marketplace.timeout)
        resolver = ImageResolver(
            settings.ipfs_gateways,
            marketplace=image_client,
            gateway_timeout=settings.ipfs_gateway_timeout,
            randomize_gateways=settings.ipfs_randomize_gateways,
            exempt_contracts=settings.market_image_exempt_contracts,
        )
    view = CatalogView(records, resolver, marketplace, max_retries=settings.image_max_retries)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        view.close()

    app = FastAPI(title="NFT Catalog", lifespan=lifespan)
    app.state.settings = settings
    app.state.catalog = view
    app.state.upstream = OpenSeaUpstream(settings.opensea_api_base, settings.opensea_api_key, session=upstream_session)

    # The browser front end may be served from another origin during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(proxy_router)
    app.include_router(catalog_router)

    @app.get("/")
    def read_root():
        return {"message": "NFT catalog backend", "records": len(view.records)}

    return app


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    _settings = load_settings()
    logging.basicConfig(
        level=_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Proxy server running on port %d", _settings.port)
    uvicorn.run("catalog_app:create_app", factory=True, host="0.0.0.0", port=_settings.port)
