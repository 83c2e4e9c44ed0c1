"""Read-only view of the product catalog.

Catalog CRUD lives elsewhere; checkout only needs price, currency and the
configured rail for one product, snapshotted when an attempt is created.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Protocol

from .logging_config import get_logger

logger = get_logger(__name__)

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "UGX", "XAF", "XOF"})


def to_minor_units(amount: Any, currency: str) -> int:
    """Convert a major-unit price (``"25.00"``, ``25``) to minor units."""
    value = Decimal(str(amount))
    if not value.is_finite():
        raise ValueError(f"price is not finite: {amount!r}")
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    return int((value * (Decimal(10) ** exponent)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Product:
    ref: str
    name: str
    price_minor: int
    currency: str
    rail: str | None
    checkout_link: str | None = None
    images: tuple[str, ...] = field(default_factory=tuple)
    available: bool = True


class Catalog(Protocol):
    async def get_product(self, ref: str) -> Product | None: ...


class JsonCatalog:
    """``products.json`` reader, re-parsed whenever the file changes."""

    def __init__(self, path: Path, *, default_currency: str = "USD") -> None:
        self.path = Path(path)
        self.default_currency = default_currency.upper()
        self._mtime: float | None = None
        self._products: dict[str, Product] = {}

    async def get_product(self, ref: str) -> Product | None:
        self._refresh()
        return self._products.get(str(ref or "").strip().lower())

    def _refresh(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            self._products = {}
            self._mtime = None
            return
        if mtime == self._mtime:
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("catalog_unreadable", path=str(self.path))
            return
        products: dict[str, Product] = {}
        for raw in payload if isinstance(payload, list) else payload.get("products", []):
            product = self._parse(raw)
            if product is not None:
                products[product.ref] = product
        self._products = products
        self._mtime = mtime

    def _parse(self, raw: dict[str, Any]) -> Product | None:
        ref = str(raw.get("slug") or raw.get("ref") or "").strip().lower()
        if not ref or raw.get("price") is None:
            logger.warning("catalog_entry_skipped", entry=raw.get("slug") or raw.get("id"))
            return None
        currency = str(raw.get("currency") or self.default_currency).upper()
        try:
            price_minor = to_minor_units(raw["price"], currency)
        except (ArithmeticError, ValueError):
            logger.warning("catalog_price_invalid", product_ref=ref)
            return None
        return Product(
            ref=ref,
            name=str(raw.get("title") or raw.get("name") or ref),
            price_minor=price_minor,
            currency=currency,
            rail=raw.get("checkout_flow") or raw.get("rail"),
            checkout_link=raw.get("checkout_link"),
            images=tuple(raw.get("images") or ()),
            available=bool(raw.get("available", True)),
        )


class StaticCatalog:
    """In-memory catalog for wiring tests and the CLI."""

    def __init__(self, products: list[Product] | None = None) -> None:
        self._products = {p.ref: p for p in products or []}

    def put(self, product: Product) -> None:
        self._products[product.ref] = product

    async def get_product(self, ref: str) -> Product | None:
        return self._products.get(ref)
