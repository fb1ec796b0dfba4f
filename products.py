"""Catalog query building and product output helpers."""
import re
from typing import List, Optional, Tuple

SORT_OPTIONS = {
    "price_asc": ("price", 1),
    "price_desc": ("price", -1),
    "rating": ("rating", -1),
    "newest": ("created_at", -1),
    "oldest": ("created_at", 1),
    "name": ("name", 1),
}

# listings leave the embedded reviews out
LISTING_PROJECTION = {"reviews": 0}
FEATURED_LIMIT = 8


def has_text_index(collection) -> bool:
    for info in collection.index_information().values():
        if any(kind == "text" for _, kind in info.get("key", [])):
            return True
    return False


def build_product_query(
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    search: Optional[str] = None,
    brand: Optional[str] = None,
    min_rating: Optional[float] = None,
    sort_by: Optional[str] = None,
    include_inactive: bool = False,
    text_search: bool = False,
) -> Tuple[dict, Tuple[str, int]]:
    """
    Return (filter, sort) for the product listing.

    `search` becomes a $text query when the collection has a text index
    (`text_search=True`), otherwise a case-insensitive regex over name and
    description.
    """
    filt = {}
    if not include_inactive:
        filt["is_active"] = True
    if category:
        filt["category"] = category
    if min_price is not None or max_price is not None:
        filt["price"] = {}
        if min_price is not None:
            filt["price"]["$gte"] = min_price
        if max_price is not None:
            filt["price"]["$lte"] = max_price
    if search:
        if text_search:
            filt["$text"] = {"$search": search}
        else:
            pattern = re.escape(search)
            filt["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
    if brand:
        filt["brand"] = {"$regex": re.escape(brand), "$options": "i"}
    if min_rating is not None:
        filt["rating"] = {"$gte": min_rating}

    sort = SORT_OPTIONS.get(sort_by or "newest", SORT_OPTIONS["newest"])
    return filt, sort


def stock_status(product: dict) -> str:
    stock = product.get("stock", 0)
    if stock == 0:
        return "Out of Stock"
    if stock <= product.get("low_stock_threshold", 10):
        return "Low Stock"
    return "In Stock"


def discounted_price(product: dict) -> float:
    price = product.get("price", 0)
    discount = product.get("discount", 0)
    if discount > 0:
        return round(price - price * discount / 100, 2)
    return price


def product_payload(doc: dict) -> dict:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc["discounted_price"] = discounted_price(doc)
    doc["stock_status"] = stock_status(doc)
    return doc


def rating_summary(reviews: List[dict]) -> Tuple[float, int]:
    """Average rating and review count for a product's embedded reviews."""
    if not reviews:
        return 0.0, 0
    total = sum(review["rating"] for review in reviews)
    return round(total / len(reviews), 2), len(reviews)
