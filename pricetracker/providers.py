"""Per-site provider adapters.

Each adapter turns a canonical product URL into an `ExternalItem` or raises
`ProviderNotFound` (listing gone, don't retry this cycle) or
`ProviderTransient` (network/parse trouble, retry next tick).
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from .config import HTTP_TIMEOUT_SECONDS
from .errors import ProviderNotFound, ProviderTransient
from .models import ExternalItem
from .sites import Site
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)

SHOPEE_BASE_URL = "https://shopee.co.id"
SHOPEE_IMAGE_BASE_URL = "https://cf.shopee.co.id/file/"
# Shopee reports prices in 1/100000 rupiah.
SHOPEE_PRICE_DIVISOR = 100000

_SHOPEE_SLUG_IDS = re.compile(r"[.-]i\.(\d+)\.(\d+)$")
_BLIBLI_SKU = re.compile(r"^ps--([A-Za-z0-9-]+)$")


@retryable_request
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    """Thin wrapper around session.get with retry policy from utils.retryable_request."""
    return session.get(url, **kwargs)


class Provider:
    """Base adapter. Subclasses implement `fetch_item` for one site."""

    site: Site

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = HTTP_TIMEOUT_SECONDS) -> None:
        self.session = session or get_http_session()
        self.timeout = timeout

    def fetch_item(self, url: str) -> ExternalItem:
        raise NotImplementedError

    def _request(self, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return _get(self.session, url, **kwargs)
        except HTTPError as e:
            if e.status_code in (404, 410):
                raise ProviderNotFound(f"{self.site.value} item not found: {url}") from e
            raise ProviderTransient(f"{self.site.value} request failed for {url}: {e}") from e
        except requests.RequestException as e:
            raise ProviderTransient(f"{self.site.value} request failed for {url}: {e}") from e


# ---------------------------
# Shopee (JSON item API)
# ---------------------------

def shopee_shop_and_item_id(url: str) -> Optional[tuple[str, str]]:
    path = urlparse(url).path.rstrip("/")
    if path.startswith("/product/"):
        parts = path.split("/")
        if len(parts) >= 4 and parts[-2].isdigit() and parts[-1].isdigit():
            return parts[-2], parts[-1]
        return None
    m = _SHOPEE_SLUG_IDS.search(path)
    if m:
        return m.group(1), m.group(2)
    return None


class ShopeeProvider(Provider):
    site = Site.SHOPEE

    def fetch_item(self, url: str) -> ExternalItem:
        ids = shopee_shop_and_item_id(url)
        if ids is None:
            raise ProviderNotFound(f"cannot read shop and item id from Shopee url: {url}")
        shop_id, item_id = ids
        api_url = f"{SHOPEE_BASE_URL}/api/v4/item/get"
        resp = self._request(
            api_url,
            params={"shopid": shop_id, "itemid": item_id},
            cookies={"SPC_U": "-"},
        )
        try:
            body = resp.json()
        except ValueError as e:
            raise ProviderTransient(f"error decoding Shopee item response for {url}") from e

        data = body.get("data") if isinstance(body, dict) else None
        if not data:
            raise ProviderNotFound(f"Shopee item not found: {url} (error={body.get('error') if isinstance(body, dict) else None})")

        try:
            price = int(data.get("price") or 0) // SHOPEE_PRICE_DIVISOR
        except (TypeError, ValueError) as e:
            raise ProviderTransient(f"unexpected Shopee price for {url}: {data.get('price')!r}") from e
        if price <= 0:
            raise ProviderTransient(f"Shopee item response has no price: {url}")

        try:
            rating = (data.get("item_rating") or {}).get("rating_star") or 0.0
            image = data.get("image") or ""
            return ExternalItem(
                site=Site.SHOPEE,
                merchant_id=str(data.get("shopid") or shop_id),
                product_id=str(data.get("itemid") or item_id),
                url=f"{SHOPEE_BASE_URL}/product/{shop_id}/{item_id}",
                name=str(data.get("name") or ""),
                price=price,
                stock=int(data.get("stock") or 0),
                image_url=SHOPEE_IMAGE_BASE_URL + image if image else "",
                description=str(data.get("description") or ""),
                rating=float(rating),
                sold=int(data.get("historical_sold") or 0),
            )
        except (TypeError, ValueError) as e:
            raise ProviderTransient(f"unexpected Shopee item payload for {url}") from e


# ---------------------------
# Product pages with schema.org JSON-LD (Tokopedia, Blibli)
# ---------------------------

def _iter_jsonld_blocks(soup: BeautifulSoup) -> Iterator[dict]:
    for tag in soup.select('script[type="application/ld+json"]'):
        try:
            data = json.loads(tag.string or "")
        except ValueError:
            continue
        stack = data if isinstance(data, list) else [data]
        for b in stack:
            if not isinstance(b, dict):
                continue
            yield b
            for nested in b.get("@graph") or []:
                if isinstance(nested, dict):
                    yield nested


def _is_product(block: dict) -> bool:
    t = block.get("@type")
    if isinstance(t, list):
        return "Product" in t
    return t == "Product"


def _parse_amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    t = re.sub(r"[^0-9.]", "", str(value))
    try:
        return float(t) if t else None
    except ValueError:
        return None


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def parse_jsonld_product(html: str) -> Optional[Dict[str, Any]]:
    """Extract name/price/stock/image/description/rating from a product page.

    Returns None when the page carries no schema.org Product block. `price`
    is None when the offer has no usable amount. Stock falls back to 1 for
    an in-stock offer without an inventory level.
    """
    soup = BeautifulSoup(html, "html.parser")
    product = next((b for b in _iter_jsonld_blocks(soup) if _is_product(b)), None)
    if product is None:
        return None

    offers = _first(product.get("offers")) or {}
    price = _parse_amount(offers.get("price"))
    if price is None:
        price = _parse_amount(offers.get("lowPrice"))

    availability = str(offers.get("availability") or "")
    in_stock = availability.endswith("InStock") or availability.endswith("LimitedAvailability")
    inventory = offers.get("inventoryLevel")
    if isinstance(inventory, dict):
        inventory = inventory.get("value")
    level = _parse_amount(inventory)
    if level is not None:
        stock = int(level)
    else:
        stock = 1 if in_stock else 0

    rating = (product.get("aggregateRating") or {}).get("ratingValue")
    image = _first(product.get("image"))
    if isinstance(image, dict):
        image = image.get("url")

    return {
        "name": str(product.get("name") or "").strip(),
        "price": int(price) if price else None,
        "stock": stock,
        "image_url": str(image or ""),
        "description": str(product.get("description") or "").strip(),
        "rating": _parse_amount(rating) or 0.0,
    }


class _ProductPageProvider(Provider):
    def identity(self, url: str) -> Optional[tuple[str, str]]:
        raise NotImplementedError

    def fetch_item(self, url: str) -> ExternalItem:
        ids = self.identity(url)
        if ids is None:
            raise ProviderNotFound(f"not a {self.site.value} product url: {url}")
        merchant_id, product_id = ids

        resp = self._request(url, headers={"Accept": "text/html,application/xhtml+xml"})
        parsed = parse_jsonld_product(resp.text or "")
        if parsed is None:
            raise ProviderNotFound(f"{self.site.value} page has no product data: {url}")
        if not parsed["price"] or parsed["price"] <= 0:
            raise ProviderTransient(f"{self.site.value} page has no price: {url}")
        return ExternalItem(
            site=self.site,
            merchant_id=merchant_id,
            product_id=product_id,
            url=url,
            **parsed,
        )


class TokopediaProvider(_ProductPageProvider):
    site = Site.TOKOPEDIA

    def identity(self, url: str) -> Optional[tuple[str, str]]:
        parts = [p for p in urlparse(url).path.split("/") if p]
        if len(parts) != 2:
            return None
        return parts[0], parts[1]


class BlibliProvider(_ProductPageProvider):
    site = Site.BLIBLI

    def identity(self, url: str) -> Optional[tuple[str, str]]:
        parts = [p for p in urlparse(url).path.split("/") if p]
        if len(parts) < 3 or parts[0] != "p":
            return None
        m = _BLIBLI_SKU.match(parts[-1])
        if not m:
            return None
        sku = m.group(1).upper()
        return sku.split("-", 1)[0], sku


def build_providers(session: Optional[requests.Session] = None) -> Dict[Site, Provider]:
    """One adapter per supported site, sharing `session`."""
    session = session or get_http_session()
    return {
        Site.SHOPEE: ShopeeProvider(session),
        Site.TOKOPEDIA: TokopediaProvider(session),
        Site.BLIBLI: BlibliProvider(session),
    }


__all__ = [
    "Provider",
    "ShopeeProvider",
    "TokopediaProvider",
    "BlibliProvider",
    "build_providers",
    "parse_jsonld_product",
    "shopee_shop_and_item_id",
]
