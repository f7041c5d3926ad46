"""
Database Schemas

MongoDB collection schemas as Pydantic models.
Model name is converted to lowercase for the collection name:
- Product -> "product" collection
- Cart -> "cart" collection
- Coupon -> "coupon" collection
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product" (lowercase of class name)

    Sized products carry a size -> count mapping in `stock`,
    products without sizes a single count.
    """
    title: str = Field(..., description="Product title")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Price in dollars")
    category: str = Field(..., description="Product category")
    image_url: Optional[str] = Field(None, description="Primary image URL")
    sizes: List[str] = Field(default_factory=list, description="Size labels offered, empty if unsized")
    stock: Union[int, Dict[str, int]] = Field(0, description="Units on hand, per size for sized products")

    @model_validator(mode="after")
    def check_stock_matches_sizes(self):
        if self.sizes:
            if not isinstance(self.stock, dict):
                raise ValueError("Sized products need a stock entry per size")
            missing = [s for s in self.sizes if s not in self.stock]
            if missing:
                raise ValueError(f"Missing stock for sizes: {', '.join(missing)}")
            if any(v < 0 for v in self.stock.values()):
                raise ValueError("Stock cannot be negative")
        elif isinstance(self.stock, dict):
            raise ValueError("Products without sizes need a single stock count")
        elif self.stock < 0:
            raise ValueError("Stock cannot be negative")
        return self


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart"
    One document per customer; `version` increases on every write.
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    version: int = 0


class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection name: "coupon"
    """
    code: str = Field(..., description="Unique coupon code")
    discount_percentage: int = Field(..., ge=0, le=60, description="Percent taken off the order")
    minimum_amount: float = Field(0, ge=0, description="Minimum order amount to redeem")
    expiration_date: datetime = Field(..., description="UTC expiry datetime")
    is_active: bool = Field(True, description="Cleared on expiry or redemption")
    user_id: str = Field(..., description="Owning customer")
    tier: Optional[str] = Field(None, description="VIP tier the coupon was issued for")
    kind: Literal["vip", "standard"] = Field("standard", description="vip for engine-issued coupons")
