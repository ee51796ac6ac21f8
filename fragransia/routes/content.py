from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..cache import get_cache, set_cache
from ..deps import get_store
from ..store import DocumentStore, to_datetime, utcnow
from ..views import ts_to_iso

PAGES = "pages"
POPUPS = "popups"

router = APIRouter(prefix="/api/content", tags=["content"])


@router.get("/pages/{slug}")
async def get_page(slug: str, store: DocumentStore = Depends(get_store)):
    cache_key = f"pages_{slug}"
    cached = get_cache(cache_key)
    if cached is not None:
        return {"success": True, "page": cached}
    page = store.get(PAGES, slug)
    if not page or page.get("status") != "published":
        raise HTTPException(status_code=404, detail="Page not found")
    view = {**page, "updatedAt": ts_to_iso(page.get("updatedAt")), "createdAt": ts_to_iso(page.get("createdAt"))}
    set_cache(cache_key, view)
    return {"success": True, "page": view}


def select_popups(
    popups: List[Dict[str, Any]],
    device: str,
    page: Optional[str],
    returning: Optional[bool],
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Popups eligible for a visitor, highest priority first."""
    now = now or utcnow()
    out = []
    for popup in popups:
        if not popup.get("isActive", True):
            continue
        start, end = to_datetime(popup.get("startDate")), to_datetime(popup.get("endDate"))
        if (start and now < start) or (end and now > end):
            continue
        targeting = popup.get("targeting") or {}
        if device not in (targeting.get("devices") or ["desktop", "mobile", "tablet"]):
            continue
        pages = (popup.get("triggers") or {}).get("pages") or []
        if pages and "all_pages" not in pages and page not in pages:
            continue
        if returning is not None:
            if targeting.get("newVisitors") is True and returning:
                continue
            if targeting.get("returningVisitors") is True and not returning:
                continue
        out.append(popup)
    out.sort(key=lambda p: int(p.get("priority", 0)), reverse=True)
    return out


@router.get("/popups/active")
async def active_popups(
    device: str = Query("desktop", pattern="^(desktop|mobile|tablet)$"),
    page: Optional[str] = None,
    returning: Optional[bool] = None,
    store: DocumentStore = Depends(get_store),
):
    popups = select_popups(store.query(POPUPS, {"isActive": True}), device, page, returning)
    views = [
        {
            "id": p["id"],
            "title": p.get("title"),
            "content": p.get("content"),
            "image": p.get("image"),
            "ctaText": p.get("ctaText"),
            "ctaLink": p.get("ctaLink"),
            "triggers": p.get("triggers") or {},
            "priority": p.get("priority", 0),
            "startDate": ts_to_iso(p.get("startDate")),
            "endDate": ts_to_iso(p.get("endDate")),
        }
        for p in popups
    ]
    return {"success": True, "popups": views, "count": len(views)}
