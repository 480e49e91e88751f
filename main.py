import logging
import os
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import loyalty
from database import DocumentStore, StoreError, get_store, now_iso
from realtime import broadcaster, happy_updated, reservation_created, reservations_changed
from schemas import (
    HAPPY, ORDERS, POINTS_OPS, PREPAID, RESERVATIONS, REWARDS, USERS,
    CardHistoryEntry, HappyBar, Order, PointsOperation, PrepaidCard, Reservation, Reward, User,
)

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
STATIC_DIR = os.getenv("STATIC_DIR", os.path.join(BASE_DIR, "public"))
ADMIN_PATH = os.getenv("ADMIN_PATH", "/33201adm")

app = FastAPI(title="MILK Loyalty API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===================== Error responses =====================
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"message": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        fields.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "invalid"))
    return JSONResponse({"message": "Invalid request: " + "; ".join(fields)}, status_code=400)


@app.exception_handler(StoreError)
async def store_exception_handler(request: Request, exc: StoreError):
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"message": "Could not save data"}, status_code=500)


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"message": "Internal server error"}, status_code=500)


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Loose = Optional[Union[float, str]]
Identifier = Optional[Union[str, int]]


def _ident(value: Identifier) -> Optional[str]:
    return str(value) if value not in (None, "") else None


# ===================== Public Endpoints =====================
def _static_file(relative_path: str) -> Optional[str]:
    root = os.path.realpath(STATIC_DIR)
    candidate = os.path.realpath(os.path.join(root, relative_path))
    if candidate.startswith(root + os.sep) and os.path.isfile(candidate):
        return candidate
    return None


@app.get("/")
def root():
    index = _static_file("index.html")
    if index:
        return FileResponse(index)
    return {"message": "MILK API running"}


@app.get(ADMIN_PATH)
def admin_page():
    page = _static_file("admin-milk.html")
    if not page:
        raise HTTPException(404, "Admin panel not installed")
    return FileResponse(page)


@app.get("/test")
def test_database(store: DocumentStore = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "store": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "collections": []
    }
    try:
        info = store.describe()
        response["store"] = f"✅ {info['backend']}"
        response["collections"] = info["collections"]
    except Exception as e:
        response["store"] = f"❌ Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# ===================== Stats =====================
@app.get("/api/milk/stats")
def get_stats(store: DocumentStore = Depends(get_store)):
    return loyalty.summarize(
        store.get_documents(USERS),
        store.get_documents(POINTS_OPS),
        store.get_documents(ORDERS),
        store.get_documents(PREPAID),
    )


# ===================== Users =====================
@app.get("/api/milk/users")
def list_users(store: DocumentStore = Depends(get_store)):
    return store.get_documents(USERS)


@app.get("/api/milk/users/{user_id}")
def get_user(user_id: str, store: DocumentStore = Depends(get_store)):
    user = store.get_document_by_id(USERS, user_id)
    if not user:
        raise HTTPException(404, "User not found")
    user["history"] = store.get_documents(POINTS_OPS, {"userId": user_id}, sort=[("createdAt", -1)])
    return user


# ===================== Points =====================
class PointsRequest(Payload):
    user_id: Identifier = None
    amount: Loose = None
    points: Loose = None
    op: Optional[str] = None
    note: Optional[str] = None


@app.post("/api/milk/points/add")
def add_points(payload: PointsRequest, store: DocumentStore = Depends(get_store)):
    user_id = _ident(payload.user_id)
    if not user_id:
        raise HTTPException(400, "userId is required")
    try:
        points = loyalty.resolve_points(payload.points, payload.amount)
    except ValueError as e:
        raise HTTPException(400, str(e))
    op = loyalty.normalize_op(payload.op)

    user = store.get_document_by_id(USERS, user_id)
    if not user:
        user = store.create_document(USERS, User(id=user_id).to_document())
        logger.info("Created user %s on first points operation", user_id)

    balance = loyalty.apply_points(user.get("points"), points, op)
    user = store.update_document(USERS, user_id, {"points": balance})

    entry = PointsOperation(
        user_id=user_id,
        amount=loyalty.parse_number(payload.amount),
        points=points,
        op=op,
        note=payload.note or "",
    )
    entry = store.create_document(POINTS_OPS, entry.to_document())
    logger.info("Points %s %d for user %s, balance %d", op, points, user_id, balance)
    return {"ok": True, "user": user, "op": entry}


@app.get("/api/milk/points/ops")
def list_points_ops(user_id: Optional[str] = Query(None, alias="userId"), store: DocumentStore = Depends(get_store)):
    filt = {"userId": user_id} if user_id else {}
    return store.get_documents(POINTS_OPS, filt, sort=[("createdAt", -1)])


# ===================== Rewards =====================
class RewardRequest(Payload):
    title: Optional[str] = None
    cost: Loose = None
    description: Optional[str] = Field(None, validation_alias=AliasChoices("description", "desc"))
    icon: Optional[str] = None


@app.get("/api/milk/rewards")
def list_rewards(store: DocumentStore = Depends(get_store)):
    return store.get_documents(REWARDS)


@app.post("/api/milk/rewards", status_code=201)
def create_reward(payload: RewardRequest, store: DocumentStore = Depends(get_store)):
    cost = loyalty.parse_int(payload.cost)
    if not payload.title or not cost:
        raise HTTPException(400, "title and cost are required")
    reward = Reward(
        title=payload.title,
        cost=cost,
        description=payload.description or "",
        icon=payload.icon or "",
    )
    reward = store.create_document(REWARDS, reward.to_document())
    logger.info("Reward %s created: %s", reward["id"], reward["title"])
    return reward


@app.put("/api/milk/rewards/{reward_id}")
def update_reward(reward_id: str, payload: RewardRequest, store: DocumentStore = Depends(get_store)):
    reward = store.get_document_by_id(REWARDS, reward_id)
    if not reward:
        raise HTTPException(404, "Reward not found")
    changes: Dict[str, Any] = {}
    provided = payload.model_fields_set
    if "title" in provided:
        changes["title"] = str(payload.title)
    if "cost" in provided:
        changes["cost"] = loyalty.parse_int(payload.cost) or reward.get("cost")
    if "description" in provided:
        changes["description"] = str(payload.description)
    if "icon" in provided:
        changes["icon"] = str(payload.icon)
    if changes:
        reward = store.update_document(REWARDS, reward_id, changes)
        logger.info("Reward %s updated: %s", reward_id, sorted(changes))
    return reward


@app.delete("/api/milk/rewards/{reward_id}")
def delete_reward(reward_id: str, store: DocumentStore = Depends(get_store)):
    ok = store.delete_document(REWARDS, reward_id)
    if not ok:
        raise HTTPException(404, "Reward not found")
    logger.info("Reward %s deleted", reward_id)
    return {"ok": True}


# ===================== Orders =====================
class CreateOrderRequest(Payload):
    items: List[Dict[str, Any]] = []
    total: Loose = None
    pickup_time: Optional[str] = None
    pickup_location: Optional[str] = None
    notes: Optional[str] = None
    user_id: Identifier = None


class UpdateOrderStatusRequest(Payload):
    status: Optional[str] = None


@app.post("/api/milk/orders", status_code=201)
def create_order(payload: CreateOrderRequest, store: DocumentStore = Depends(get_store)):
    if not payload.items:
        raise HTTPException(400, "Order has no items")
    order = Order(
        items=payload.items,
        total=loyalty.parse_number(payload.total),
        pickup_time=payload.pickup_time or None,
        pickup_location=payload.pickup_location or None,
        notes=payload.notes or "",
        user_id=_ident(payload.user_id),
    )
    order = store.create_document(ORDERS, order.to_document())
    logger.info("Order %s received (%d items)", order["id"], len(order["items"]))
    return order


@app.get("/api/milk/orders")
def list_orders(user_id: Optional[str] = Query(None, alias="userId"), store: DocumentStore = Depends(get_store)):
    filt = {"userId": user_id} if user_id else {}
    return store.get_documents(ORDERS, filt, sort=[("createdAt", -1)])


@app.put("/api/milk/orders/{order_id}")
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest, store: DocumentStore = Depends(get_store)):
    changes = {"updatedAt": now_iso()}
    if payload.status:
        changes["status"] = payload.status
    order = store.update_document(ORDERS, order_id, changes)
    if not order:
        raise HTTPException(404, "Order not found")
    logger.info("Order %s status: %s", order_id, order.get("status"))
    return order


# ===================== Prepaid cards =====================
class PurchaseCardRequest(Payload):
    title: Optional[str] = None
    value: Loose = None
    bonus: Loose = None
    user_id: Identifier = None


class AdjustCardRequest(Payload):
    delta: Loose = None
    note: Optional[str] = None


def _find_card(store: DocumentStore, code: str) -> dict:
    cards = store.get_documents(PREPAID, {"code": code}, sort=[("createdAt", -1)], limit=1)
    if not cards:
        raise HTTPException(404, "Card not found")
    return cards[0]


@app.post("/api/milk/prepaid/purchase", status_code=201)
def purchase_card(payload: PurchaseCardRequest, store: DocumentStore = Depends(get_store)):
    value = loyalty.parse_number(payload.value)
    bonus = loyalty.parse_number(payload.bonus)
    if value <= 0:
        raise HTTPException(400, "Card value must be greater than 0")

    code = loyalty.generate_card_code()
    if store.count_documents(PREPAID, {"code": code}):
        logger.warning("Prepaid code %s is already in use by another card", code)

    total = value + bonus
    card = PrepaidCard(
        code=code,
        title=payload.title or f"Karta {value} zł",
        value=value,
        bonus=bonus,
        total=total,
        balance=total,
        user_id=_ident(payload.user_id),
        history=[CardHistoryEntry(delta=total, note=loyalty.PURCHASE_NOTE, date=now_iso())],
    )
    card = store.create_document(PREPAID, card.to_document())
    logger.info("Prepaid card %s issued, balance %s", code, total)
    return card


@app.get("/api/milk/prepaid")
def list_cards(user_id: Optional[str] = Query(None, alias="userId"), store: DocumentStore = Depends(get_store)):
    filt = {"userId": user_id} if user_id else {}
    return store.get_documents(PREPAID, filt, sort=[("createdAt", -1)])


@app.get("/api/milk/prepaid/{code}")
def get_card(code: str, store: DocumentStore = Depends(get_store)):
    return _find_card(store, code)


@app.post("/api/milk/prepaid/{code}/adjust")
def adjust_card(code: str, payload: AdjustCardRequest, store: DocumentStore = Depends(get_store)):
    delta = loyalty.parse_number(payload.delta)
    if not delta:
        raise HTTPException(400, "delta must be a non-zero number")
    card = _find_card(store, code)
    try:
        balance = loyalty.adjust_balance(card, delta)
    except ValueError as e:
        raise HTTPException(400, str(e))

    history = card.get("history") if isinstance(card.get("history"), list) else []
    entry = CardHistoryEntry(delta=delta, note=payload.note or loyalty.default_adjust_note(delta), date=now_iso())
    card = store.update_document(PREPAID, card["id"], {
        "balance": balance,
        "history": [entry.to_document()] + history,
    })
    logger.info("Prepaid card %s adjusted by %s, balance %s", code, delta, balance)
    return card


# ===================== Reservations =====================
class CreateReservationRequest(Payload):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    date: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1)
    guests: int = Field(..., ge=1)
    room: str = Field(..., min_length=1)
    notes: Optional[str] = None
    email: Optional[EmailStr] = None
    milk_id: Identifier = None
    source: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        return v or None


class UpdateReservationRequest(Payload):
    name: Optional[str] = None
    phone: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    guests: Optional[int] = Field(None, ge=1)
    room: Optional[str] = None
    notes: Optional[str] = None
    email: Optional[EmailStr] = None
    milk_id: Identifier = None
    source: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        return v or None


@app.get("/api/rezerwacje")
def list_reservations(store: DocumentStore = Depends(get_store)):
    return store.get_documents(RESERVATIONS, sort=[("createdAt", -1)])


@app.get("/api/rezerwacje/{reservation_id}")
def get_reservation(reservation_id: str, store: DocumentStore = Depends(get_store)):
    reservation = store.get_document_by_id(RESERVATIONS, reservation_id)
    if not reservation:
        raise HTTPException(404, "Reservation not found")
    return reservation


@app.post("/api/rezerwacje", status_code=201)
def create_reservation(payload: CreateReservationRequest, background_tasks: BackgroundTasks,
                       store: DocumentStore = Depends(get_store)):
    milk_id = _ident(payload.milk_id)
    reservation = Reservation(
        name=payload.name,
        phone=payload.phone,
        date=payload.date,
        time=payload.time,
        guests=payload.guests,
        room=payload.room,
        notes=payload.notes or "",
        email=payload.email,
        milk_id=milk_id,
        source=payload.source or ("app" if milk_id else "index"),
    )
    reservation = store.create_document(RESERVATIONS, reservation.to_document())
    logger.info("Reservation %s for %s on %s %s", reservation["id"], reservation["name"],
                reservation["date"], reservation["time"])
    background_tasks.add_task(broadcaster.broadcast, reservation_created(reservation))
    return reservation


@app.put("/api/rezerwacje/{reservation_id}")
def update_reservation(reservation_id: str, payload: UpdateReservationRequest, background_tasks: BackgroundTasks,
                       store: DocumentStore = Depends(get_store)):
    changes = payload.model_dump(by_alias=True, exclude_unset=True)
    if "milkId" in changes:
        changes["milkId"] = _ident(changes["milkId"])
    if changes:
        reservation = store.update_document(RESERVATIONS, reservation_id, changes)
    else:
        reservation = store.get_document_by_id(RESERVATIONS, reservation_id)
    if not reservation:
        raise HTTPException(404, "Reservation not found")
    logger.info("Reservation %s updated: %s", reservation_id, sorted(changes))
    background_tasks.add_task(broadcaster.broadcast, reservations_changed())
    return reservation


@app.delete("/api/rezerwacje/{reservation_id}")
def delete_reservation(reservation_id: str, background_tasks: BackgroundTasks,
                       store: DocumentStore = Depends(get_store)):
    ok = store.delete_document(RESERVATIONS, reservation_id)
    if not ok:
        raise HTTPException(404, "Reservation not found")
    logger.info("Reservation %s deleted", reservation_id)
    background_tasks.add_task(broadcaster.broadcast, reservations_changed())
    return {"ok": True}


# ===================== Happy bar =====================
class HappyRequest(Payload):
    text: Optional[str] = None


def current_happy(store: DocumentStore) -> dict:
    rows = store.get_documents(HAPPY, sort=[("createdAt", -1)], limit=1)
    if not rows:
        return {"text": "", "updatedAt": None}
    return {"text": rows[0].get("text") or "", "updatedAt": rows[0].get("updatedAt") or rows[0].get("createdAt")}


@app.get("/api/happy")
def get_happy(store: DocumentStore = Depends(get_store)):
    return current_happy(store)


@app.post("/api/happy")
def set_happy(payload: HappyRequest, background_tasks: BackgroundTasks, store: DocumentStore = Depends(get_store)):
    if payload.text is None:
        raise HTTPException(400, "text is required")
    row = store.create_document(HAPPY, HappyBar(text=payload.text, updated_at=now_iso()).to_document())
    logger.info("Happy bar text changed")
    background_tasks.add_task(broadcaster.broadcast, happy_updated(row["text"]))
    return {"ok": True, "text": row["text"], "updatedAt": row["updatedAt"]}


@app.websocket("/ws")
async def listen(websocket: WebSocket, store: DocumentStore = Depends(get_store)):
    await broadcaster.connect(websocket)
    try:
        happy = await run_in_threadpool(current_happy, store)
        await websocket.send_json(happy_updated(happy["text"]))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)


# ===================== Fallbacks =====================
@app.api_route("/api", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
@app.api_route("/api/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def unknown_api():
    raise HTTPException(404, "Unknown API endpoint")


@app.get("/{full_path:path}")
def app_shell(full_path: str):
    path = _static_file(full_path) or _static_file("index.html")
    if not path:
        raise HTTPException(404, "Not found")
    return FileResponse(path)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    logger.info("MILK server on http://localhost:%d, admin panel at %s", port, ADMIN_PATH)
    uvicorn.run(app, host="0.0.0.0", port=port)
