import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import stripe
from bson import ObjectId
from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool

import payments
from database import db, create_document, ensure_indexes, get_documents
from schemas import (
    ORDER_STATUSES,
    Address,
    Cart as CartSchema,
    CartItem as CartItemSchema,
    Order as OrderSchema,
    OrderItem as OrderItemSchema,
    Product as ProductSchema,
    User as UserSchema,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days
AUTH_COOKIE = "auth_token"
AUTH_COOKIE_SECURE = os.getenv("AUTH_COOKIE_SECURE", "false").lower() == "true"

CLEAR_CART_ON_ORDER = os.getenv("CLEAR_CART_ON_ORDER", "false").lower() == "true"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is None:
        logger.warning("Starting without a database")
    else:
        ensure_indexes(db)
        seed_admin()
        seed_products()
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

CATEGORIES = [
    {"id": "1", "name": "Shoes", "description": "Premium footwear for every occasion",
     "image": "https://images.unsplash.com/photo-1549298916-b41d501d3772?auto=format&fit=crop&q=80&w=600"},
    {"id": "2", "name": "Perfumes", "description": "Luxury fragrances for men",
     "image": "https://images.unsplash.com/photo-1594035910387-fea47794261f?auto=format&fit=crop&q=80&w=600"},
    {"id": "3", "name": "Trousers", "description": "Stylish pants and trousers",
     "image": "https://images.unsplash.com/photo-1624378439575-d8705ad7ae80?auto=format&fit=crop&q=80&w=600"},
    {"id": "4", "name": "Shirts", "description": "Classic and modern shirts",
     "image": "https://images.unsplash.com/photo-1596755094514-f87e34085b2c?auto=format&fit=crop&q=80&w=600"},
    {"id": "5", "name": "T-Shirts", "description": "Casual and comfortable t-shirts",
     "image": "https://images.unsplash.com/photo-1576566588028-4147f3842f27?auto=format&fit=crop&q=80&w=600"},
    {"id": "6", "name": "Accessories", "description": "Complete your look with our accessories",
     "image": "https://images.unsplash.com/photo-1611923134239-b9be5816e23c?auto=format&fit=crop&q=80&w=600"},
]


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # Convert ObjectId in nested fields if any
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(doc)
    # Never send password hash
    user.pop("password_hash", None)
    return user


def to_object_id(id_str: str, label: str = "id") -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(id_str)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Auth models
class RegisterInput(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


# Dependencies for the current user

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    auth_token: Optional[str] = Cookie(default=None),
):
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1]
    elif auth_token:
        token = auth_token
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(user)


def require_admin(current_user: dict = Depends(get_current_user)):
    # role comes from the stored user, not from the token or a cookie
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


# Routes
@app.get("/")
def read_root():
    return {"message": "Storefront API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()
        else:
            response["database"] = "❌ Not Available"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {type(e).__name__}"
    return response


# Auth
def issue_token(response: Response, user: Dict[str, Any]) -> TokenResponse:
    token = create_access_token({"sub": user["id"], "role": user.get("role", "user")})
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        samesite="lax",
        secure=AUTH_COOKIE_SECURE,
    )
    return TokenResponse(access_token=token, user=user)


@app.post("/api/register", response_model=TokenResponse)
def register(payload: RegisterInput, response: Response):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user_model = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role="user",
    )
    try:
        user_id = create_document("user", user_model)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered user %s", user_id)
    user = public_user(db["user"].find_one({"_id": ObjectId(user_id)}))
    return issue_token(response, user)


@app.post("/api/login", response_model=TokenResponse)
def login(payload: LoginInput, response: Response):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    return issue_token(response, public_user(user))


@app.post("/api/logout")
def logout(response: Response):
    response.delete_cookie(AUTH_COOKIE)
    return {"ok": True}


@app.get("/api/users/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


@app.put("/api/users/me/address")
def update_address(address: Address, current_user: dict = Depends(get_current_user)):
    obj_id = ObjectId(current_user["id"])
    db["user"].update_one(
        {"_id": obj_id},
        {"$set": {"address": address.model_dump(), "updated_at": datetime.now(timezone.utc)}},
    )
    return public_user(db["user"].find_one({"_id": obj_id}))


# Products
class ProductIn(BaseModel):
    name: str
    description: Optional[str] = None
    price: float
    category: str
    images: List[str] = []
    sizes: List[str] = []
    colors: List[str] = []
    in_stock: bool = True
    rating: float = 0


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    images: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    in_stock: Optional[bool] = None
    rating: Optional[float] = None


def product_search_filter(q: str) -> Dict[str, Any]:
    return {"$or": [
        {"name": {"$regex": q, "$options": "i"}},
        {"description": {"$regex": q, "$options": "i"}},
        {"category": {"$regex": q, "$options": "i"}},
    ]}


@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, in_stock: Optional[bool] = None):
    query: Dict[str, Any] = {}
    if q:
        query.update(product_search_filter(q))
    if category:
        query["category"] = category
    if in_stock is not None:
        query["in_stock"] = in_stock
    return [serialize_doc(d) for d in get_documents("product", query)]


@app.get("/api/products/search")
def search_products(q: str = ""):
    query = product_search_filter(q) if q else {}
    return [serialize_doc(d) for d in get_documents("product", query)]


@app.post("/api/products")
def create_product(data: ProductIn, current_user: dict = Depends(require_admin)):
    product = ProductSchema(**data.model_dump())
    product_id = create_document("product", product)
    created = db["product"].find_one({"_id": ObjectId(product_id)})
    return serialize_doc(created)


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(product)


@app.put("/api/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, current_user: dict = Depends(require_admin)):
    obj_id = to_object_id(product_id, "product id")
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    update_dict["updated_at"] = datetime.now(timezone.utc)
    res = db["product"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    product = db["product"].find_one({"_id": obj_id})
    return serialize_doc(product)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_admin)):
    res = db["product"].delete_one({"_id": to_object_id(product_id, "product id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"ok": True}


@app.get("/api/categories")
def list_categories():
    return CATEGORIES


# Cart
class CartPayload(BaseModel):
    items: List[CartItemSchema]


@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        return []
    return cart.get("items", [])


@app.post("/api/cart")
def save_cart(payload: CartPayload, current_user: dict = Depends(get_current_user)):
    # whole-array replace, last write wins
    cart = CartSchema(user_id=current_user["id"], items=payload.items)
    items = [i.to_document() for i in cart.items]
    now = datetime.now(timezone.utc)
    db["cart"].update_one(
        {"user_id": current_user["id"]},
        {"$set": {"items": items, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    return items


@app.delete("/api/cart")
def clear_cart(current_user: dict = Depends(get_current_user)):
    db["cart"].update_one(
        {"user_id": current_user["id"]},
        {"$set": {"items": [], "updated_at": datetime.now(timezone.utc)}},
        upsert=True,
    )
    return {"ok": True}


# Checkout
class CheckoutInput(BaseModel):
    items: Optional[List[CartItemSchema]] = None


@app.post("/api/checkout")
def checkout(payload: CheckoutInput, current_user: dict = Depends(get_current_user)):
    if payload.items is not None:
        items = [i.to_document() for i in payload.items]
    else:
        cart = db["cart"].find_one({"user_id": current_user["id"]}) or {}
        items = cart.get("items", [])
    if not items:
        raise HTTPException(status_code=400, detail="Cart is empty")
    try:
        return payments.create_checkout_session(items, current_user["id"], current_user.get("email"))
    except stripe.StripeError:
        logger.exception("Checkout session creation failed for user %s", current_user["id"])
        raise HTTPException(status_code=502, detail="Payment provider error")


def fulfil_checkout_session(session: Dict[str, Any]) -> Optional[str]:
    """Create the order for a completed checkout session.

    Returns the new order id, or None when the session already has an order.
    """
    session_id = session["id"]
    if db["order"].find_one({"stripe_session_id": session_id}):
        logger.warning("Checkout session %s already fulfilled", session_id)
        return None

    user_id = (session.get("metadata") or {}).get("user_id") or session.get("client_reference_id")
    if not user_id:
        raise HTTPException(status_code=400, detail="Checkout session has no user")

    try:
        line_items = payments.fetch_line_items(session_id)
    except stripe.StripeError:
        logger.exception("Could not fetch line items for session %s", session_id)
        raise HTTPException(status_code=502, detail="Payment provider error")

    shipping = payments.shipping_address_from_session(session)
    if shipping is None and ObjectId.is_valid(user_id):
        user = db["user"].find_one({"_id": ObjectId(user_id)}, {"address": 1})
        shipping = (user or {}).get("address")

    items = [OrderItemSchema(**li) for li in line_items]
    if session.get("amount_total") is not None:
        total = payments.from_minor_units(session["amount_total"])
    else:
        total = round(sum(i.price * i.quantity for i in items), 2)

    order = OrderSchema(
        user_id=user_id,
        stripe_session_id=session_id,
        items=items,
        total=total,
        shipping_address=shipping,
        payment_status=session.get("payment_status"),
    )
    try:
        order_id = create_document("order", order)
    except DuplicateKeyError:
        # concurrent redelivery won the insert
        logger.warning("Checkout session %s already fulfilled", session_id)
        return None
    logger.info("Created order %s from session %s", order_id, session_id)

    if CLEAR_CART_ON_ORDER:
        db["cart"].update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "updated_at": datetime.now(timezone.utc)}},
        )
    return order_id


@app.post("/api/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(default=None)):
    # signature covers the raw bytes, read them before anything parses JSON
    payload = await request.body()
    try:
        event = payments.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError):
        logger.warning("Rejected webhook with invalid signature or payload")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    if event.get("type") != payments.CHECKOUT_COMPLETED:
        return {"received": True}

    order_id = await run_in_threadpool(fulfil_checkout_session, event["data"]["object"])
    if order_id is None:
        return {"received": True, "duplicate": True}
    return {"received": True, "order_id": order_id}


# Orders
def find_orders(query: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in db["order"].find(query).sort("created_at", -1)]


@app.get("/api/orders")
def list_orders(status: Optional[str] = None, current_user: dict = Depends(require_admin)):
    query: Dict[str, Any] = {}
    if status:
        if status not in ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid order status")
        query["status"] = status
    return find_orders(query)


@app.get("/api/user/orders")
def my_orders(current_user: dict = Depends(get_current_user)):
    return find_orders({"user_id": current_user["id"]})


# Admin
@app.get("/api/admin/users")
def list_users(current_user: dict = Depends(require_admin)):
    return [public_user(u) for u in db["user"].find({}, {"password_hash": 0})]


@app.delete("/api/admin/users/{user_id}")
def delete_user(user_id: str, current_user: dict = Depends(require_admin)):
    obj_id = to_object_id(user_id, "user id")
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    res = db["user"].delete_one({"_id": obj_id})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    db["cart"].delete_one({"user_id": user_id})
    logger.info("Admin %s deleted user %s", current_user["id"], user_id)
    return {"ok": True}


@app.get("/api/admin/stats")
def admin_stats(current_user: dict = Depends(require_admin)):
    revenue = 0.0
    monthly: Dict[str, float] = {}
    for order in db["order"].find({"status": {"$ne": "cancelled"}}, {"total": 1, "created_at": 1}):
        total = float(order.get("total") or 0)
        revenue += total
        created = order.get("created_at")
        if isinstance(created, datetime):
            month = created.strftime("%Y-%m")
            monthly[month] = monthly.get(month, 0.0) + total
    return {
        "users": db["user"].count_documents({}),
        "products": db["product"].count_documents({}),
        "orders": db["order"].count_documents({}),
        "revenue": round(revenue, 2),
        "monthly_revenue": [{"month": m, "revenue": round(monthly[m], 2)} for m in sorted(monthly)],
    }


# Seed data for a fresh database
def seed_admin():
    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not email or not password:
        return
    email = email.lower()
    if db["user"].find_one({"email": email}):
        return
    admin = UserSchema(name="Admin", email=email, password_hash=hash_password(password), role="admin")
    create_document("user", admin)
    logger.info("Seeded admin account %s", email)


def seed_products():
    if db["product"].count_documents({}) > 0:
        return
    samples = [
        ProductSchema(
            name="Classic Leather Sneakers",
            description="Minimal white leather sneakers with a cushioned sole.",
            price=89.0,
            category="Shoes",
            images=[CATEGORIES[0]["image"]],
            sizes=["40", "41", "42", "43", "44"],
            colors=["White", "Black"],
            rating=4.6,
        ),
        ProductSchema(
            name="Oud Noir Eau de Parfum",
            description="Warm woody fragrance with notes of oud and amber.",
            price=120.0,
            category="Perfumes",
            images=[CATEGORIES[1]["image"]],
            rating=4.8,
        ),
        ProductSchema(
            name="Slim Chino Trousers",
            description="Stretch cotton chinos with a tapered fit.",
            price=59.0,
            category="Trousers",
            images=[CATEGORIES[2]["image"]],
            sizes=["30", "32", "34", "36"],
            colors=["Beige", "Navy", "Olive"],
            rating=4.3,
        ),
        ProductSchema(
            name="Oxford Button-Down Shirt",
            description="Crisp oxford cotton shirt for work or weekend.",
            price=49.0,
            category="Shirts",
            images=[CATEGORIES[3]["image"]],
            sizes=["S", "M", "L", "XL"],
            colors=["White", "Light Blue"],
            rating=4.5,
        ),
    ]
    for p in samples:
        create_document("product", p)
    logger.info("Seeded %d demo products", len(samples))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
