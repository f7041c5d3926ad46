"""
Stock availability helpers

A product either holds a single stock count or, when it lists sizes,
a mapping of size label to count. Values read from the database are
treated leniently: anything non-numeric counts as zero and negative
counts are clamped.
"""

import math
from typing import Any, Dict, NamedTuple, Optional


class StockCheck(NamedTuple):
    is_valid: bool
    available: int
    message: Optional[str] = None


def _count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return max(0, math.floor(number))


def has_sizes(product: Dict[str, Any]) -> bool:
    return bool(product.get("sizes"))


def available_stock(product: Dict[str, Any], size: Optional[str] = None) -> Optional[int]:
    """Units available for `size`, or None when a sized product is asked without one."""
    stock = product.get("stock")
    if has_sizes(product):
        if not size:
            return None
        if not isinstance(stock, dict):
            return 0
        return _count(stock.get(size))
    if isinstance(stock, dict):
        return 0
    return _count(stock)


def validate_stock(product: Dict[str, Any], size: Optional[str], requested_quantity: int) -> StockCheck:
    available = available_stock(product, size)
    if available is None:
        return StockCheck(False, 0, "Size selection required")
    if requested_quantity <= 0:
        return StockCheck(False, available, "Quantity must be at least 1")
    if requested_quantity > available:
        suffix = f" for size {size}" if size else ""
        return StockCheck(False, available, f"Only {available} available{suffix}")
    return StockCheck(True, available)


def format_stock_message(available: Optional[int], size: Optional[str] = None) -> str:
    suffix = f" for size {size}" if size else ""
    if available is None:
        return "Select a size"
    if available <= 0:
        return f"Out of stock{suffix}"
    if available <= 5:
        return f"Only {available} left in stock{suffix}"
    return f"{available} available{suffix}"
