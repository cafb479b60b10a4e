from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Protocol

from app.services.errors import DataShapeError
from app.services.models import CatalogProduct
from app.store.supabase_rest import SupabaseRestClient


logger = logging.getLogger("glow-reco-agent.catalog")

PRODUCTS_TABLE = "products"


class CatalogStore(Protocol):
    async def query(
        self,
        *,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        category: Optional[str] = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]: ...


def _price_of(row: dict[str, Any]) -> Optional[float]:
    for key in ("price_mrp", "price_sale", "price"):
        value = row.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except Exception:
            continue
    return None


def _name_of(row: dict[str, Any]) -> str:
    return str(row.get("product_name") or row.get("name") or "").strip()


class InMemoryCatalogStore(CatalogStore):
    def __init__(self, rows: Iterable[dict[str, Any]]) -> None:
        self._rows = [dict(r) for r in rows if isinstance(r, dict)]

    async def query(
        self,
        *,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        category: Optional[str] = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        cat = (category or "").strip().lower()
        out: list[dict[str, Any]] = []
        for row in self._rows:
            price = _price_of(row)
            if not _name_of(row) or price is None:
                continue
            if min_price is not None and price < min_price:
                continue
            if max_price is not None and price > max_price:
                continue
            if cat and cat not in str(row.get("category_path") or "").lower():
                continue
            out.append(dict(row))
            if len(out) >= limit:
                break
        return out


class SupabaseCatalogStore(CatalogStore):
    def __init__(self, client: SupabaseRestClient, *, table: str = PRODUCTS_TABLE) -> None:
        self._client = client
        self._table = table

    async def query(
        self,
        *,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        category: Optional[str] = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, Any]] = [
            ("select", "*"),
            ("product_name", "not.is.null"),
            ("price_mrp", "not.is.null"),
            ("order", "product_id.asc"),
            ("limit", max(1, int(limit))),
        ]
        if min_price is not None:
            params.append(("price_mrp", f"gte.{min_price:g}"))
        if max_price is not None:
            params.append(("price_mrp", f"lte.{max_price:g}"))
        if category:
            params.append(("category_path", f"ilike.*{category}*"))
        return await self._client.select(self._table, params=params)


def to_catalog_products(rows: Iterable[Any]) -> list[CatalogProduct]:
    products: list[CatalogProduct] = []
    skipped = 0
    for index, row in enumerate(rows):
        try:
            if not isinstance(row, dict):
                raise DataShapeError("catalog row is not an object")
            product = CatalogProduct.from_row(row, index=index)
            if not product.product_id:
                raise DataShapeError("catalog row has no product id")
        except Exception as exc:
            skipped += 1
            logger.debug("catalog_row_skipped index=%d err=%s", index, exc)
            continue
        products.append(product)
    if skipped:
        logger.warning("catalog_rows_skipped count=%d", skipped)
    return products
