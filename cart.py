"""
Stock-aware cart

Each customer has one cart document holding line items keyed by
(product_id, size). Every mutation re-reads the product and checks the
resulting quantity against current stock before writing.

Writes are guarded by the cart's `version` field: the document is only
replaced when nobody else wrote it since it was read, otherwise the whole
read-validate-write is retried. Stock itself is checked, not held.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import CART_WRITE_ATTEMPTS
from schemas import Cart, CartItem
from stock import available_stock, format_stock_message, has_sizes, validate_stock

logger = logging.getLogger(__name__)

KEY_DELIMITER = "-"


class CartError(Exception):
    status_code = 400

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_detail(self) -> Dict[str, Any]:
        return {"message": self.message, **self.detail}


class ProductNotFound(CartError):
    status_code = 404


class LineNotFound(CartError):
    status_code = 404


class InvalidQuantity(CartError):
    pass


class SizeRequired(CartError):
    pass


class InsufficientStock(CartError):
    pass


class CartConflict(CartError):
    status_code = 409


def parse_line_key(key: str) -> Tuple[str, Optional[str]]:
    """Split `productId` or `productId-size` into its parts."""
    product_id, sep, size = key.partition(KEY_DELIMITER)
    return product_id, (size if sep and size else None)


def line_key(item: Dict[str, Any]) -> str:
    if item.get("size"):
        return f"{item['product_id']}{KEY_DELIMITER}{item['size']}"
    return item["product_id"]


def _same_line(item: Dict[str, Any], product_id: str, size: Optional[str]) -> bool:
    return item.get("product_id") == product_id and (item.get("size") or None) == (size or None)


def _load_product(db: Database, product_id: str) -> Optional[Dict[str, Any]]:
    if not product_id or not ObjectId.is_valid(product_id):
        return None
    return db["product"].find_one({"_id": ObjectId(product_id)})


def _load_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart is None:
        return Cart(user_id=user_id).model_dump()
    cart.setdefault("items", [])
    return cart


def _save_cart(db: Database, cart: Dict[str, Any], items: List[Dict[str, Any]]) -> bool:
    """Write `items` if the cart is unchanged since it was read. False on a lost race."""
    now = datetime.now(timezone.utc)
    if cart.get("_id") is None:
        doc = Cart(user_id=cart["user_id"], items=[CartItem(**i) for i in items], version=1).model_dump()
        doc["created_at"] = now
        doc["updated_at"] = now
        try:
            db["cart"].insert_one(doc)
        except DuplicateKeyError:
            return False
        return True
    version = cart.get("version")
    if version is None:
        # carts written before versioning: null matches a missing field too
        update = {"$set": {"items": items, "updated_at": now, "version": 1}}
    else:
        update = {"$set": {"items": items, "updated_at": now}, "$inc": {"version": 1}}
    result = db["cart"].update_one({"_id": cart["_id"], "version": version}, update)
    return result.matched_count == 1


def _mutate(db: Database, user_id: str, change: Callable[[List[Dict[str, Any]]], Optional[List[Dict[str, Any]]]], attempts: int = CART_WRITE_ATTEMPTS) -> List[Dict[str, Any]]:
    """Apply `change` to a fresh copy of the cart items and persist it.

    `change` returns the new item list, or None when nothing needs writing.
    Domain errors raised by `change` propagate untouched.
    """
    for attempt in range(1, attempts + 1):
        cart = _load_cart(db, user_id)
        current = [dict(i) for i in cart["items"]]
        updated = change(current)
        if updated is None:
            return current
        if _save_cart(db, cart, updated):
            return updated
        logger.warning("Cart write conflict for user %s (attempt %d/%d)", user_id, attempt, attempts)
    raise CartConflict("Cart was modified concurrently, please retry")


def _check(product: Dict[str, Any], size: Optional[str], quantity: int) -> int:
    check = validate_stock(product, size, quantity)
    if check.is_valid:
        return check.available
    if available_stock(product, size) is None:
        raise SizeRequired(check.message)
    if quantity <= 0:
        raise InvalidQuantity(check.message)
    raise InsufficientStock(check.message, available=check.available)


def add_to_cart(db: Database, user_id: str, product_id: str, size: Optional[str] = None, quantity: int = 1) -> List[Dict[str, Any]]:
    def change(items):
        product = _load_product(db, product_id)
        if not product:
            raise ProductNotFound("Product not found")
        line_size = size if has_sizes(product) else None
        _check(product, line_size, quantity)

        for item in items:
            if _same_line(item, product_id, line_size):
                held = int(item.get("quantity") or 0)
                check = validate_stock(product, line_size, held + quantity)
                if not check.is_valid:
                    suffix = f" for size {line_size}" if line_size else ""
                    raise InsufficientStock(
                        f"Cannot add {quantity} more: only {check.available} available{suffix} and you already have {held} in your cart",
                        available=check.available,
                        in_cart=held,
                    )
                item["quantity"] = held + quantity
                return items

        items.append(CartItem(product_id=product_id, quantity=quantity, size=line_size).model_dump())
        return items

    return _mutate(db, user_id, change)


def update_quantity(db: Database, user_id: str, key: str, quantity: int) -> List[Dict[str, Any]]:
    if quantity is None or quantity <= 0:
        raise InvalidQuantity("Quantity must be at least 1")
    product_id, size = parse_line_key(key)

    def change(items):
        target = next((i for i in items if _same_line(i, product_id, size)), None)
        if target is None:
            raise LineNotFound("Product not found in cart")
        product = _load_product(db, product_id)
        if not product:
            raise ProductNotFound("Product not found")
        _check(product, size, quantity)
        target["quantity"] = quantity
        return items

    return _mutate(db, user_id, change)


def remove_line(db: Database, user_id: str, key: Optional[str] = None) -> List[Dict[str, Any]]:
    """Remove one line, or everything when `key` is empty. Missing lines are not an error."""
    def change(items):
        if not key:
            return [] if items else None
        product_id, size = parse_line_key(key)
        kept = [i for i in items if not _same_line(i, product_id, size)]
        return kept if len(kept) != len(items) else None

    return _mutate(db, user_id, change)


def _is_well_formed(item: Dict[str, Any]) -> bool:
    quantity = item.get("quantity")
    return (
        isinstance(item.get("product_id"), str)
        and ObjectId.is_valid(item["product_id"])
        and isinstance(quantity, int)
        and not isinstance(quantity, bool)
        and quantity > 0
    )


def read_cart(db: Database, user_id: str) -> List[Dict[str, Any]]:
    """Return cart lines joined with product details, purging lines that no longer resolve."""
    products: Dict[str, Dict[str, Any]] = {}

    def purge(items):
        well_formed = [i for i in items if _is_well_formed(i)]
        ids = list({ObjectId(i["product_id"]) for i in well_formed})
        products.clear()
        if ids:
            for p in db["product"].find({"_id": {"$in": ids}}):
                products[str(p["_id"])] = p
        kept = [i for i in well_formed if i["product_id"] in products]
        if len(kept) != len(items):
            logger.info("Purged %d invalid cart line(s) for user %s", len(items) - len(kept), user_id)
            return kept
        return None

    items = _mutate(db, user_id, purge)

    lines = []
    for item in items:
        product = products[item["product_id"]]
        size = item.get("size")
        available = available_stock(product, size)
        lines.append({
            "key": line_key(item),
            "product_id": item["product_id"],
            "size": size,
            "quantity": item["quantity"],
            "title": product.get("title"),
            "price": float(product.get("price", 0.0)),
            "image_url": product.get("image_url"),
            "available": available,
            "stock_message": format_stock_message(available, size),
        })
    return lines
