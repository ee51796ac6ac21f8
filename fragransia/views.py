"""Response shaping helpers shared by the routers."""
import math
from typing import Any, Dict, List

from .store import to_datetime


def ts_to_iso(value: Any) -> str:
    try:
        dt = to_datetime(value)
    except ValueError:
        return ""
    return dt.isoformat() if dt else ""


def product_to_view(p: Dict[str, Any]) -> Dict[str, Any]:
    inventory = int(p.get("inventory", 0) or 0)
    return {
        "id": p.get("id"),
        "name": p.get("name"),
        "description": p.get("description"),
        "price": p.get("price"),
        "comparePrice": p.get("comparePrice"),
        "category": p.get("category"),
        "brand": p.get("brand"),
        "images": p.get("images") or [],
        "sizes": p.get("sizes") or [],
        "tags": p.get("tags") or [],
        "inventory": inventory,
        "inStock": inventory > 0,
        "rating": p.get("rating", 0),
        "reviewCount": p.get("reviewCount", 0),
        "soldCount": p.get("soldCount", 0),
        "isActive": bool(p.get("isActive", True)),
        "isFeatured": bool(p.get("isFeatured", False)),
        "createdAt": ts_to_iso(p.get("createdAt")),
    }


def paginate(items: List[Any], page: int, limit: int, name: str = "items") -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, limit)
    total = len(items)
    total_pages = math.ceil(total / limit) if total else 0
    start = (page - 1) * limit
    return {
        name: items[start:start + limit],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "total": total,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
    }
