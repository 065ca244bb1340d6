from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from .catalog_view import (
    DEFAULT_SORT_DIRECTION,
    DEFAULT_SORT_FIELD,
    SORT_FIELDS,
    CatalogFilters,
    CatalogPage,
    CatalogView,
    RecordDetail,
)
from .records import CatalogRecord

router = APIRouter()


class VisibleRequest(BaseModel):
    record_ids: List[int]


class RenderFailure(BaseModel):
    url: Optional[str] = None


def _view(request: Request) -> CatalogView:
    return request.app.state.catalog


@router.get("/api/catalog", response_model=CatalogPage)
def list_catalog(
    request: Request,
    search: Optional[str] = Query(None),
    platform: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    collaborator: Optional[str] = Query(None),
    sort: str = Query(DEFAULT_SORT_FIELD),
    order: str = Query(DEFAULT_SORT_DIRECTION),
    page: int = Query(1, ge=1),
    page_size: int = Query(0, ge=0, le=500, description="0 returns every match"),
) -> CatalogPage:
    if sort not in SORT_FIELDS:
        raise HTTPException(status_code=400, detail=f"sort must be one of {', '.join(SORT_FIELDS)}")
    if order not in ("asc", "desc"):
        raise HTTPException(status_code=400, detail="order must be asc or desc")
    filters = CatalogFilters(search=search, platform=platform, type=type, collaborator=collaborator)
    return _view(request).query(filters, sort, order, page, page_size)


@router.get("/api/catalog/facets")
def catalog_facets(request: Request):
    return _view(request).facets()


@router.post("/api/catalog/visible")
def set_visible(body: VisibleRequest, request: Request):
    """Replace the visible set; returns image state for each visible record."""
    slots = _view(request).resolve_visible(body.record_ids)
    return {"images": list(slots.values())}


@router.get("/api/catalog/{record_id}", response_model=CatalogRecord)
def get_record(record_id: int, request: Request) -> CatalogRecord:
    record = _view(request).get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return record


@router.get("/api/catalog/{record_id}/image")
def get_image(record_id: int, request: Request):
    snapshot = _view(request).image(record_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return snapshot


@router.post("/api/catalog/{record_id}/image/render-failed")
def image_render_failed(record_id: int, body: RenderFailure, request: Request):
    snapshot = _view(request).report_render_failure(record_id, body.url)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Record is not visible")
    return snapshot


@router.get("/api/catalog/{record_id}/market", response_model=RecordDetail)
def get_market(record_id: int, request: Request) -> RecordDetail:
    detail = _view(request).detail(record_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return detail
