"""Same-origin proxy for the marketplace HTTP API.

Each route forwards to the upstream API with the server-held key attached
and returns the upstream JSON unmodified. Any failure (network, non-success
status, bad JSON) becomes HTTP 500 with a generic ``{"error": ...}`` body.
"""

import logging
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

router = APIRouter()


class UpstreamError(Exception):
    pass


class OpenSeaUpstream:
    def __init__(self, api_base: str, api_key: str, session: Optional[requests.Session] = None, timeout: int = 20):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        headers = {"X-API-KEY": self.api_key, "accept": "application/json"}
        url = f"{self.api_base}{path}"
        try:
            r = self.session.get(url, headers=headers, params=params or {}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamError(f"request to {path} failed: {exc}") from exc
        if r.status_code != 200:
            raise UpstreamError(f"upstream {path} returned {r.status_code}: {r.text[:200]}")
        try:
            return r.json()
        except ValueError as exc:
            raise UpstreamError(f"upstream {path} returned invalid JSON") from exc


def _event_params(event_type, occurred_after, occurred_before, cursor, limit=None) -> Dict[str, str]:
    params = {
        "event_type": event_type,
        "occurred_after": occurred_after,
        "occurred_before": occurred_before,
        "cursor": cursor,
        "limit": str(limit) if limit else None,
    }
    return {k: v for k, v in params.items() if v}


def _forward(request: Request, path: str, params: Dict[str, str], error: str):
    upstream: OpenSeaUpstream = request.app.state.upstream
    try:
        return upstream.get(path, params)
    except UpstreamError as exc:
        logger.error("Error fetching from OpenSea: %s", exc)
        return JSONResponse(status_code=500, content={"error": error})


@router.get("/api/price/{contract_address}/{token_id}")
def proxy_price(contract_address: str, token_id: str, request: Request):
    return _forward(
        request,
        f"/asset/{contract_address}/{token_id}/",
        {"include_orders": "true"},
        "Failed to fetch price data",
    )


@router.get("/api/floor/{contract_address}")
def proxy_floor(contract_address: str, request: Request):
    return _forward(request, f"/asset_contract/{contract_address}", {}, "Failed to fetch floor data")


@router.get("/api/events/{contract_address}/{token_id}")
def proxy_events(
    contract_address: str,
    token_id: str,
    request: Request,
    event_type: Optional[str] = Query(None),
    occurred_after: Optional[str] = Query(None),
    occurred_before: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
):
    params = _event_params(event_type, occurred_after, occurred_before, cursor)
    params.update({"asset_contract_address": contract_address, "token_id": token_id})
    return _forward(request, "/events", params, "Failed to fetch events")


@router.get("/api/collection-events/{contract_address}")
def proxy_collection_events(
    contract_address: str,
    request: Request,
    event_type: Optional[str] = Query(None),
    occurred_after: Optional[str] = Query(None),
    occurred_before: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=300),
):
    params = _event_params(event_type, occurred_after, occurred_before, cursor, limit)
    params["asset_contract_address"] = contract_address
    return _forward(request, "/events", params, "Failed to fetch collection events")
