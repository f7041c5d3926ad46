import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

import cart as carts
import config
import vip
from config import VipPolicy, configure_logging, get_vip_policy
from database import create_document, ensure_indexes, get_db
from schemas import Product

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    database = get_db()
    if database is not None:
        ensure_indexes(database)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


@app.exception_handler(vip.CouponIssueError)
async def coupon_issue_error_handler(request: Request, exc: vip.CouponIssueError):
    logger.error("Coupon issuance failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Could not issue coupon, please retry"})


# Utilities

def to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id"):
        d["id"] = str(d.pop("_id"))
    return d


def require_db(database: Optional[Database] = Depends(get_db)) -> Database:
    if database is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return database


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    # set by the auth gateway in front of this service
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    expected = config.ADMIN_API_KEY
    if not expected or not secrets.compare_digest((x_admin_key or "").encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Admin access required")


@app.get("/")
def read_root():
    return {"message": "Store backend is running"}


@app.get("/test")
def test_database(database: Optional[Database] = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.name if hasattr(database, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = database.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# Seed a small demo catalog if none exists
@app.post("/seed")
def seed_products(database: Database = Depends(require_db)):
    existing = database["product"].count_documents({})
    if existing == 0:
        demo = [
            Product(title="Oxford Shirt", description="Cotton button-down", price=59.0, category="Shirts", image_url="https://images.unsplash.com/photo-1602810318383-e386cc2a3ccf", sizes=["S", "M", "L"], stock={"S": 4, "M": 3, "L": 0}),
            Product(title="Wool Trousers", description="Slim fit, pressed creases", price=129.0, category="Bottoms", image_url="https://images.unsplash.com/photo-1520975693416-35a1d9d8f5f4", sizes=["30", "32", "34"], stock={"30": 6, "32": 8, "34": 2}),
            Product(title="Leather Belt", description="Full-grain, brass buckle", price=45.0, category="Accessories", image_url="https://images.unsplash.com/photo-1553062407-98eeb64c6a62", stock=12),
            Product(title="Canvas Tote", description="Heavy canvas, inner pocket", price=29.0, category="Accessories", image_url="https://images.unsplash.com/photo-1544816155-12df9643f363", stock=0),
        ]
        for p in demo:
            create_document("product", p, database=database)
    return {"seeded": True, "count": int(database["product"].count_documents({}))}


# ---------------------- VIP coupons ----------------------

@app.get("/api/vip/eligibility", response_model=vip.EligibilityReport)
def vip_eligibility(
    user_id: str = Depends(current_user_id),
    database: Database = Depends(require_db),
    policy: VipPolicy = Depends(get_vip_policy),
):
    return vip.evaluate_single(database, policy, user_id)


@app.post("/api/vip/create-mine", status_code=201, response_model=vip.ClaimOutcome)
def vip_create_mine(
    user_id: str = Depends(current_user_id),
    database: Database = Depends(require_db),
    policy: VipPolicy = Depends(get_vip_policy),
):
    outcome = vip.claim_for_self(database, policy, user_id)
    if outcome.status != vip.COUPON_CREATED:
        raise HTTPException(status_code=400, detail=outcome.model_dump(mode="json"))
    return outcome


@app.post("/api/vip/create-all", response_model=vip.BatchSummary, dependencies=[Depends(require_admin)])
def vip_create_all(
    database: Database = Depends(require_db),
    policy: VipPolicy = Depends(get_vip_policy),
):
    return vip.evaluate_batch(database, policy)


@app.get("/api/coupons")
def get_coupon(user_id: str = Depends(current_user_id), database: Database = Depends(require_db)):
    coupon = vip.get_active_coupon(database, user_id)
    return to_str_id(coupon) if coupon else None


class ValidateCouponRequest(BaseModel):
    code: str


@app.post("/api/coupons/validate")
def validate_coupon(
    payload: ValidateCouponRequest,
    user_id: str = Depends(current_user_id),
    database: Database = Depends(require_db),
):
    if not payload.code.strip():
        raise HTTPException(status_code=400, detail="Coupon code is required")
    result = vip.validate_coupon(database, user_id, payload.code)
    if not result["valid"]:
        status = 400 if result["reason"] == "Coupon has expired" else 404
        raise HTTPException(status_code=status, detail=result["reason"])
    return {"message": "Coupon is valid", **result}


# ---------------------- Cart ----------------------

class AddToCartRequest(BaseModel):
    product_id: str
    size: Optional[str] = None
    quantity: int = 1


class UpdateQuantityRequest(BaseModel):
    quantity: int


class RemoveFromCartRequest(BaseModel):
    product_id: Optional[str] = None


def _cart_error(e: carts.CartError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


@app.get("/api/cart")
def get_cart(user_id: str = Depends(current_user_id), database: Database = Depends(require_db)):
    return {"items": carts.read_cart(database, user_id)}


@app.post("/api/cart")
def add_to_cart(
    payload: AddToCartRequest,
    user_id: str = Depends(current_user_id),
    database: Database = Depends(require_db),
):
    if not payload.product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    try:
        items = carts.add_to_cart(database, user_id, payload.product_id, payload.size, payload.quantity)
    except carts.CartError as e:
        raise _cart_error(e)
    return {"items": items}


@app.put("/api/cart/{line_key}")
def update_quantity(
    line_key: str,
    payload: UpdateQuantityRequest,
    user_id: str = Depends(current_user_id),
    database: Database = Depends(require_db),
):
    try:
        items = carts.update_quantity(database, user_id, line_key, payload.quantity)
    except carts.CartError as e:
        raise _cart_error(e)
    return {"items": items}


@app.delete("/api/cart")
def remove_from_cart(
    payload: Optional[RemoveFromCartRequest] = None,
    user_id: str = Depends(current_user_id),
    database: Database = Depends(require_db),
):
    key = payload.product_id if payload else None
    try:
        items = carts.remove_line(database, user_id, key)
    except carts.CartError as e:
        raise _cart_error(e)
    return {"items": items}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
