# FILE: trustgate/catalog.py
from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from .errors import ErrorKind, TrustError
from .pipeline import Outcome, RequestContext

# resource path segment -> permission prefix
RESOURCES: Dict[str, str] = {
    "coupons": "coupon",
    "stores": "store",
    "deals": "deal",
    "cashback": "cashback",
    "categories": "category",
}


class Catalog:
    """
    In-memory stand-in for the cached catalogue resources.

    Only exists so the cache-read / cache-invalidate stages have real routes
    to sit on; no business rules live here.
    """

    def __init__(self):
        self._g = threading.Lock()
        self._items: Dict[str, List[Dict[str, Any]]] = {r: [] for r in RESOURCES}

    def _bucket(self, resource: str) -> List[Dict[str, Any]]:
        if resource not in self._items:
            raise TrustError(ErrorKind.NOT_FOUND, "Unknown resource")
        return self._items[resource]

    def list(self, resource: str, *, q: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._g:
            items = [dict(i) for i in self._bucket(resource)]
        if q:
            ql = q.lower()
            items = [i for i in items if ql in i["name"].lower()]
        return items

    def add(self, resource: str, item: Dict[str, Any], *, created_by: Optional[str]) -> Dict[str, Any]:
        rec = dict(item)
        rec.update({"id": uuid.uuid4().hex, "createdBy": created_by, "createdAt": time.time()})
        with self._g:
            self._bucket(resource).append(rec)
        return dict(rec)

    def remove(self, resource: str, item_id: str) -> None:
        with self._g:
            bucket = self._bucket(resource)
            for i, rec in enumerate(bucket):
                if rec["id"] == item_id:
                    del bucket[i]
                    return
        raise TrustError(ErrorKind.NOT_FOUND, "Item not found")

    def search(self, q: str) -> Dict[str, List[Dict[str, Any]]]:
        return {r: self.list(r, q=q) for r in RESOURCES}

    # ---- handlers ----

    def list_handler(self, resource: str):
        async def handler(ctx: RequestContext) -> Outcome:
            q = ctx.query.get("q")
            items = self.list(resource, q=q if isinstance(q, str) else None)
            return Outcome(data=items, meta={"count": len(items)})

        handler.__name__ = f"list_{resource}"
        return handler

    def create_handler(self, resource: str):
        async def handler(ctx: RequestContext) -> Outcome:
            item = self.add(resource, ctx.data.model_dump(), created_by=ctx.user_id)
            return Outcome(data=item, message="Created", status=201)

        handler.__name__ = f"create_{resource}"
        return handler

    def delete_handler(self, resource: str):
        async def handler(ctx: RequestContext) -> Outcome:
            self.remove(resource, str(ctx.path_params.get("id") or ""))
            return Outcome(message="Deleted")

        handler.__name__ = f"delete_{resource}"
        return handler

    async def home(self, ctx: RequestContext) -> Outcome:
        return Outcome(data={r: self.list(r)[-5:] for r in RESOURCES})

    async def search_handler(self, ctx: RequestContext) -> Outcome:
        q = ctx.query.get("q")
        if not isinstance(q, str) or not q.strip():
            raise TrustError(ErrorKind.VALIDATION, "Query parameter q is required")
        return Outcome(data=self.search(q.strip()))


__all__ = ["RESOURCES", "Catalog"]
