from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging
import math
import os
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

import jwt
from pydantic import BaseModel, Field

from allocation import (
    Allocation,
    InvalidInput,
    ItemNotFound,
    LineItem,
    Participant,
    Receipt,
    Selection,
    SplitStrategy,
    allocate,
)
from payments import build_venmo_link, format_amount, mock_apple_pay
from realtime import ChangeFeed


def load_dotenv_file() -> None:
    base_dir = os.path.dirname(__file__)
    env_path = os.path.join(base_dir, ".env")
    if not os.path.exists(env_path):
        return
    with open(env_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, val = line.split("=", 1)
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = val


load_dotenv_file()

APP_VERSION = "1.0.0"
DB_PATH = os.getenv("SPLIT_DB_PATH", os.path.join(os.path.dirname(__file__), "app.db"))
TOKEN_SECRET = os.getenv("SPLIT_TOKEN_SECRET", "dev-split-token-secret-change-in-production")
TOKEN_ALGORITHM = "HS256"
TOKEN_TTL_HOURS = float(os.getenv("SPLIT_TOKEN_TTL_HOURS", "48"))
PUBLIC_BASE_URL = os.getenv("SPLIT_PUBLIC_BASE_URL", "http://localhost:3000")
DEFAULT_MAX_PARTICIPANTS = int(os.getenv("SPLIT_DEFAULT_MAX_PARTICIPANTS", "20"))
MAX_POLL_WAIT_SEC = float(os.getenv("SPLIT_MAX_POLL_WAIT_SEC", "25"))
LOG_LEVEL = os.getenv("SPLIT_LOG_LEVEL", "INFO").upper()
TOTAL_TOLERANCE = 0.01

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="bill-split-backend", version=APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

change_feed = ChangeFeed()


def get_db_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db() -> None:
    with get_db_conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                restaurant_name TEXT,
                split_type TEXT NOT NULL,
                max_participants INTEGER NOT NULL,
                venmo_username TEXT,
                subtotal REAL NOT NULL,
                tax_amount REAL NOT NULL,
                tip_amount REAL NOT NULL,
                total_amount REAL NOT NULL,
                owner_participant_id TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS receipt_items (
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                item_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                name TEXT NOT NULL,
                price REAL NOT NULL,
                PRIMARY KEY (session_id, item_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS participants (
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                participant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                is_owner INTEGER NOT NULL DEFAULT 0,
                joined_at TEXT NOT NULL,
                PRIMARY KEY (session_id, participant_id),
                UNIQUE (session_id, name)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS item_selections (
                session_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                participant_id TEXT NOT NULL,
                percentage REAL NOT NULL,
                PRIMARY KEY (session_id, item_id, participant_id),
                FOREIGN KEY (session_id, item_id) REFERENCES receipt_items(session_id, item_id) ON DELETE CASCADE,
                FOREIGN KEY (session_id, participant_id)
                    REFERENCES participants(session_id, participant_id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS payments (
                session_id TEXT NOT NULL,
                participant_id TEXT NOT NULL,
                method TEXT NOT NULL,
                amount REAL NOT NULL,
                reference TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (session_id, participant_id),
                FOREIGN KEY (session_id, participant_id)
                    REFERENCES participants(session_id, participant_id) ON DELETE CASCADE
            )
            """
        )
        conn.commit()


class ReceiptItemPayload(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    price: float = Field(ge=0)


class ReceiptPayload(BaseModel):
    items: List[ReceiptItemPayload] = Field(min_length=1)
    subtotal: Optional[float] = Field(default=None, ge=0)
    tax_amount: float = Field(default=0, ge=0)
    tip_amount: float = Field(default=0, ge=0)
    total_amount: Optional[float] = Field(default=None, ge=0)


class CreateSessionRequest(BaseModel):
    owner_name: str = Field(min_length=1, max_length=64)
    restaurant_name: Optional[str] = None
    split_type: SplitStrategy = SplitStrategy.EQUAL
    max_participants: Optional[int] = Field(default=None, ge=1, le=100)
    venmo_username: Optional[str] = None
    receipt: ReceiptPayload


class SessionSetupRequest(BaseModel):
    restaurant_name: Optional[str] = None
    split_type: Optional[SplitStrategy] = None
    max_participants: Optional[int] = Field(default=None, ge=1, le=100)
    venmo_username: Optional[str] = None


class JoinSessionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=64)


class SelectionPayload(BaseModel):
    item_id: str
    percentage: float = Field(gt=0, le=100)


class SaveSelectionsRequest(BaseModel):
    selections: List[SelectionPayload] = Field(default_factory=list)


class PayRequest(BaseModel):
    method: Literal["venmo", "apple_pay"]
    note: Optional[str] = Field(default=None, max_length=140)


init_db()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_short_id() -> str:
    return str(uuid.uuid4())[:8]


def build_join_url(session_id: str) -> str:
    return f"{PUBLIC_BASE_URL.rstrip('/')}/join?session={session_id}"


def issue_token(session_id: str, participant_id: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sid": session_id,
        "pid": participant_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=TOKEN_TTL_HOURS),
    }
    return jwt.encode(payload, TOKEN_SECRET, algorithm=TOKEN_ALGORITHM)


def read_token(session_id: str, token: Optional[str], role: Optional[str] = None) -> Dict[str, Any]:
    if not token:
        raise HTTPException(status_code=401, detail="Session token required")
    try:
        payload = jwt.decode(token, TOKEN_SECRET, algorithms=[TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid session token")
    if payload.get("sid") != session_id:
        raise HTTPException(status_code=403, detail="Token belongs to another session")
    if role and payload.get("role") != role:
        raise HTTPException(status_code=403, detail=f"{role.capitalize()} access required")
    if payload.get("pid") not in fetch_participant_map(session_id):
        raise HTTPException(status_code=403, detail="Participant is not in this session")
    return payload


def normalize_receipt(payload: ReceiptPayload) -> Dict[str, Any]:
    items: List[Dict[str, Any]] = []
    seen = set()
    for idx, item in enumerate(payload.items):
        item_id = (item.id or "").strip() or str(idx)
        if item_id in seen:
            raise HTTPException(status_code=400, detail=f"Duplicate item id {item_id}")
        seen.add(item_id)
        name = item.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Item name is required")
        items.append({"id": item_id, "name": name, "price": float(item.price)})

    subtotal = payload.subtotal if payload.subtotal is not None else sum(i["price"] for i in items)
    expected_total = subtotal + payload.tax_amount + payload.tip_amount
    if payload.total_amount is None:
        total = expected_total
    else:
        total = payload.total_amount
        if abs(total - expected_total) > TOTAL_TOLERANCE:
            raise HTTPException(
                status_code=400,
                detail=f"total_amount {format_amount(total)} does not equal subtotal + tax + tip "
                f"({format_amount(expected_total)})",
            )
    return {
        "items": items,
        "subtotal": float(subtotal),
        "tax_amount": float(payload.tax_amount),
        "tip_amount": float(payload.tip_amount),
        "total_amount": float(total),
    }


def fetch_session(session_id: str) -> sqlite3.Row:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Session not found")
    return row


def fetch_receipt_items(session_id: str) -> List[Dict[str, Any]]:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT item_id, name, price FROM receipt_items WHERE session_id = ? ORDER BY position",
            (session_id,),
        ).fetchall()
    return [{"id": row["item_id"], "name": row["name"], "price": float(row["price"])} for row in rows]


def fetch_participants(session_id: str) -> List[Participant]:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT participant_id, name, is_owner FROM participants WHERE session_id = ? ORDER BY rowid",
            (session_id,),
        ).fetchall()
    return [Participant(id=row["participant_id"], name=row["name"], is_owner=bool(row["is_owner"])) for row in rows]


def fetch_participant_map(session_id: str) -> Dict[str, Participant]:
    return {p.id: p for p in fetch_participants(session_id)}


def fetch_selections(session_id: str) -> List[Selection]:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT item_id, participant_id, percentage FROM item_selections WHERE session_id = ? ORDER BY rowid",
            (session_id,),
        ).fetchall()
    return [
        Selection(item_id=row["item_id"], participant_id=row["participant_id"], percentage=float(row["percentage"]))
        for row in rows
    ]


def fetch_payments(session_id: str) -> Dict[str, Dict[str, Any]]:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT participant_id, method, amount, reference, created_at FROM payments WHERE session_id = ?",
            (session_id,),
        ).fetchall()
    return {row["participant_id"]: dict(row) for row in rows}


def build_receipt(session: sqlite3.Row, items: List[Dict[str, Any]]) -> Receipt:
    return Receipt(
        subtotal=float(session["subtotal"]),
        tax_amount=float(session["tax_amount"]),
        tip_amount=float(session["tip_amount"]),
        total_amount=float(session["total_amount"]),
        items=tuple(LineItem(id=i["id"], name=i["name"], price=i["price"]) for i in items),
    )


def distribute_cents(amounts: Dict[str, float]) -> Dict[str, int]:
    """Round each amount to cents so the rounded values add up to the rounded sum.

    Floors every amount, then hands the leftover cents to the largest fractional
    remainders (ties go to the earlier key).
    """
    total_cents = int(round(sum(amounts.values()) * 100))
    raw_cents = {key: value * 100 for key, value in amounts.items()}
    cents = {key: int(math.floor(raw + 1e-9)) for key, raw in raw_cents.items()}
    remainder = max(0, total_cents - sum(cents.values()))
    if remainder > 0:
        by_fraction = sorted(amounts.keys(), key=lambda key: raw_cents[key] - cents[key], reverse=True)
        for key in by_fraction[:remainder]:
            cents[key] += 1
    return cents


def compute_session_allocation(session_id: str) -> Tuple[sqlite3.Row, List[Participant], Allocation]:
    session = fetch_session(session_id)
    participants = fetch_participants(session_id)
    receipt = build_receipt(session, fetch_receipt_items(session_id))
    selections = fetch_selections(session_id)
    try:
        allocation = allocate(receipt, selections, SplitStrategy(session["split_type"]), participants)
    except ItemNotFound as ex:
        logger.error("[summary] Session %s has a selection for unknown item %s", session_id, ex.item_id)
        raise HTTPException(status_code=409, detail=str(ex))
    except InvalidInput as ex:
        raise HTTPException(status_code=400, detail=str(ex))
    return session, participants, allocation


def compute_session_summary(session_id: str) -> Dict[str, Any]:
    session, participants, allocation = compute_session_allocation(session_id)
    total_cents = distribute_cents({pid: share.total_share for pid, share in allocation.shares.items()})
    shares: Dict[str, Dict[str, Any]] = {}
    for participant in participants:
        share = allocation.shares[participant.id]
        shares[participant.id] = {
            "name": participant.name,
            "is_owner": participant.is_owner,
            "subtotal_share": round(share.subtotal_share, 2),
            "tax_share": round(share.tax_share, 2),
            "tip_share": round(share.tip_share, 2),
            "total_share": round(total_cents[participant.id] / 100.0, 2),
            "line_items": [
                {
                    "item_id": line.item_id,
                    "name": line.name,
                    "price": round(line.price, 2),
                    "percentage": round(line.percentage, 2),
                    "amount": round(line.amount, 2),
                }
                for line in share.line_items
            ],
        }

    allocated_total = round(sum(total_cents.values()) / 100.0, 2)
    total_amount = float(session["total_amount"])
    return {
        "session_id": session["id"],
        "restaurant_name": session["restaurant_name"],
        "split_type": session["split_type"],
        "participant_count": len(participants),
        "subtotal": round(float(session["subtotal"]), 2),
        "tax_amount": round(float(session["tax_amount"]), 2),
        "tip_amount": round(float(session["tip_amount"]), 2),
        "total_amount": round(total_amount, 2),
        "allocated_total": allocated_total,
        "unassigned_amount": round(total_amount - allocated_total, 2),
        "unallocated_item_total": round(allocation.unallocated_item_total, 2),
        "unallocated_items": [
            {"id": item.id, "name": item.name, "price": round(item.price, 2)} for item in allocation.unallocated_items
        ],
        "shares": shares,
    }


def compute_session_status(session_id: str) -> Dict[str, Any]:
    session = fetch_session(session_id)
    participants = fetch_participants(session_id)
    selected = {s.participant_id for s in fetch_selections(session_id)}
    equal_split = session["split_type"] == SplitStrategy.EQUAL.value
    rows = [
        {
            "participant_id": p.id,
            "name": p.name,
            "is_owner": p.is_owner,
            "has_selected": equal_split or p.id in selected,
        }
        for p in participants
    ]
    completed = sum(1 for r in rows if r["has_selected"])
    return {
        "session_id": session_id,
        "split_type": session["split_type"],
        "participants": rows,
        "completed_count": completed,
        "participant_count": len(rows),
        "all_selected": bool(rows) and completed == len(rows),
        "version": change_feed.version(session_id),
    }


@app.get("/")
async def home():
    return {
        "message": "Bill split API",
        "endpoints": {
            "health": "/health",
            "create_session": "/session/create",
            "join": "/session/{session_id}/join",
            "summary": "/session/{session_id}/summary",
        },
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time_utc": utc_now(),
        "db_path": DB_PATH,
    }


@app.get("/version")
async def version():
    return {
        "app": "bill-split-backend",
        "version": APP_VERSION,
    }


@app.post("/session/create")
async def create_session(req: CreateSessionRequest):
    owner_name = req.owner_name.strip()
    if not owner_name:
        raise HTTPException(status_code=400, detail="Owner name is required")
    receipt = normalize_receipt(req.receipt)
    session_id = new_short_id()
    owner_id = new_short_id()
    created_at = utc_now()
    max_participants = req.max_participants or DEFAULT_MAX_PARTICIPANTS
    with get_db_conn() as conn:
        conn.execute(
            """
            INSERT INTO sessions (
                id, restaurant_name, split_type, max_participants, venmo_username,
                subtotal, tax_amount, tip_amount, total_amount, owner_participant_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                (req.restaurant_name or "").strip() or None,
                req.split_type.value,
                max_participants,
                (req.venmo_username or "").strip() or None,
                receipt["subtotal"],
                receipt["tax_amount"],
                receipt["tip_amount"],
                receipt["total_amount"],
                owner_id,
                created_at,
            ),
        )
        for position, item in enumerate(receipt["items"]):
            conn.execute(
                "INSERT INTO receipt_items (session_id, item_id, position, name, price) VALUES (?, ?, ?, ?, ?)",
                (session_id, item["id"], position, item["name"], item["price"]),
            )
        conn.execute(
            "INSERT INTO participants (session_id, participant_id, name, is_owner, joined_at) VALUES (?, ?, ?, 1, ?)",
            (session_id, owner_id, owner_name, created_at),
        )
        conn.commit()
    logger.info("[session] Created %s with %d items (%s split)", session_id, len(receipt["items"]), req.split_type.value)
    return {
        "session_id": session_id,
        "participant_id": owner_id,
        "owner_token": issue_token(session_id, owner_id, "owner"),
        "join_url": build_join_url(session_id),
        "split_type": req.split_type.value,
        "max_participants": max_participants,
        "receipt": receipt,
    }


@app.get("/session/{session_id}")
async def session_state(session_id: str):
    session = fetch_session(session_id)
    return {
        "session_id": session["id"],
        "restaurant_name": session["restaurant_name"],
        "split_type": session["split_type"],
        "max_participants": session["max_participants"],
        "owner_participant_id": session["owner_participant_id"],
        "join_url": build_join_url(session_id),
        "receipt": {
            "items": fetch_receipt_items(session_id),
            "subtotal": session["subtotal"],
            "tax_amount": session["tax_amount"],
            "tip_amount": session["tip_amount"],
            "total_amount": session["total_amount"],
        },
        "participants": [
            {"participant_id": p.id, "name": p.name, "is_owner": p.is_owner} for p in fetch_participants(session_id)
        ],
        "status": compute_session_status(session_id),
    }


@app.post("/session/{session_id}/setup")
async def setup_session(
    session_id: str,
    req: SessionSetupRequest,
    x_session_token: Optional[str] = Header(default=None),
):
    session = fetch_session(session_id)
    read_token(session_id, x_session_token, role="owner")

    updates: Dict[str, Any] = {}
    if req.restaurant_name is not None:
        updates["restaurant_name"] = req.restaurant_name.strip() or None
    if req.venmo_username is not None:
        updates["venmo_username"] = req.venmo_username.strip() or None
    if req.max_participants is not None:
        joined = len(fetch_participants(session_id))
        if req.max_participants < joined:
            raise HTTPException(status_code=409, detail=f"{joined} participants already joined")
        updates["max_participants"] = req.max_participants
    if req.split_type is not None and req.split_type.value != session["split_type"]:
        if fetch_payments(session_id):
            raise HTTPException(status_code=409, detail="Split type is locked once payments are recorded")
        updates["split_type"] = req.split_type.value

    if updates:
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with get_db_conn() as conn:
            conn.execute(f"UPDATE sessions SET {assignments} WHERE id = ?", (*updates.values(), session_id))
            conn.commit()
        change_feed.publish(session_id, "setup_updated")
        logger.info("[session] Setup of %s updated: %s", session_id, ", ".join(sorted(updates)))

    session = fetch_session(session_id)
    return {
        "ok": True,
        "session_id": session_id,
        "restaurant_name": session["restaurant_name"],
        "split_type": session["split_type"],
        "max_participants": session["max_participants"],
        "venmo_username": session["venmo_username"],
    }


@app.post("/session/{session_id}/join")
async def join_session(session_id: str, req: JoinSessionRequest):
    fetch_session(session_id)
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    participant_id = new_short_id()
    conn = get_db_conn()
    try:
        conn.execute("BEGIN IMMEDIATE")
        limit = conn.execute("SELECT max_participants FROM sessions WHERE id = ?", (session_id,)).fetchone()[0]
        joined = conn.execute("SELECT COUNT(*) FROM participants WHERE session_id = ?", (session_id,)).fetchone()[0]
        if joined >= limit:
            raise HTTPException(status_code=409, detail="This bill has reached its participant limit")
        try:
            conn.execute(
                "INSERT INTO participants (session_id, participant_id, name, is_owner, joined_at) VALUES (?, ?, ?, 0, ?)",
                (session_id, participant_id, name, utc_now()),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="This name is already taken")
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    change_feed.publish(session_id, "participant_joined")
    logger.info("[session] %s joined %s", participant_id, session_id)
    return {
        "session_id": session_id,
        "participant_id": participant_id,
        "name": name,
        "participant_token": issue_token(session_id, participant_id, "participant"),
    }


@app.put("/session/{session_id}/selections")
async def save_selections(
    session_id: str,
    req: SaveSelectionsRequest,
    x_session_token: Optional[str] = Header(default=None),
):
    fetch_session(session_id)
    participant_id = read_token(session_id, x_session_token)["pid"]
    if participant_id in fetch_payments(session_id):
        raise HTTPException(status_code=409, detail="Selections are locked once your share is paid")
    known_items ={item["id"] for item in fetch_receipt_items(session_id)}
    seen = set()
    for sel in req.selections:
        if sel.item_id not in known_items:
            raise HTTPException(status_code=404, detail=f"Item {sel.item_id} not found")
        if sel.item_id in seen:
            raise HTTPException(status_code=400, detail=f"Item {sel.item_id} selected more than once")
        seen.add(sel.item_id)

    # Replace only this participant's rows; other participants' writes never overlap.
    with get_db_conn() as conn:
        conn.execute(
            "DELETE FROM item_selections WHERE session_id = ? AND participant_id = ?",
            (session_id, participant_id),
        )
        conn.executemany(
            "INSERT INTO item_selections (session_id, item_id, participant_id, percentage) VALUES (?, ?, ?, ?)",
            [(session_id, sel.item_id, participant_id, float(sel.percentage)) for sel in req.selections],
        )
        conn.commit()

    event = change_feed.publish(session_id, "selections_saved")
    logger.info("[selections] %s saved %d selections in %s", participant_id, len(req.selections), session_id)
    return {
        "ok": True,
        "session_id": session_id,
        "participant_id": participant_id,
        "selections": [sel.model_dump() for sel in req.selections],
        "version": event.version,
    }


@app.get("/session/{session_id}/selections")
async def list_selections(session_id: str):
    fetch_session(session_id)
    return {
        "session_id": session_id,
        "selections": [
            {"item_id": s.item_id, "participant_id": s.participant_id, "percentage": s.percentage}
            for s in fetch_selections(session_id)
        ],
    }


@app.get("/session/{session_id}/status")
async def session_status(session_id: str):
    return compute_session_status(session_id)


@app.get("/session/{session_id}/changes")
async def session_changes(
    session_id: str,
    since: int = Query(0, ge=0),
    wait: float = Query(0, ge=0),
):
    fetch_session(session_id)
    wait = min(wait, MAX_POLL_WAIT_SEC)
    # A since ahead of the feed (e.g. after a restart) is stale; answer at once.
    if wait > 0 and change_feed.version(session_id) == since:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        subscription = change_feed.subscribe(session_id, lambda _event: loop.call_soon_threadsafe(changed.set))
        try:
            if change_feed.version(session_id) == since:
                try:
                    await asyncio.wait_for(changed.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        finally:
            subscription.cancel()
    status = compute_session_status(session_id)
    status["changed"] = status["version"] != since
    return status


@app.get("/session/{session_id}/summary")
async def session_summary(session_id: str, format: str = Query("full")):
    summary = compute_session_summary(session_id)
    if format == "compact":
        return {
            "session_id": summary["session_id"],
            "split_type": summary["split_type"],
            "total_amount": summary["total_amount"],
            "allocated_total": summary["allocated_total"],
            "unassigned_amount": summary["unassigned_amount"],
            "shares": {pid: {"name": v["name"], "total_share": v["total_share"]} for pid, v in summary["shares"].items()},
        }
    return summary


@app.get("/session/{session_id}/participants/{participant_id}/share")
async def participant_share(session_id: str, participant_id: str):
    summary = compute_session_summary(session_id)
    share = summary["shares"].get(participant_id)
    if share is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    return {"session_id": session_id, "participant_id": participant_id, "split_type": summary["split_type"], **share}


@app.post("/session/{session_id}/pay")
async def pay_share(
    session_id: str,
    req: PayRequest,
    x_session_token: Optional[str] = Header(default=None),
):
    session = fetch_session(session_id)
    participant_id = read_token(session_id, x_session_token)["pid"]
    if participant_id in fetch_payments(session_id):
        raise HTTPException(status_code=409, detail="Share already paid")
    amount = compute_session_summary(session_id)["shares"][participant_id]["total_share"]
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Nothing to pay")

    response: Dict[str, Any] = {"session_id": session_id, "participant_id": participant_id, "method": req.method}
    if req.method == "venmo":
        recipient = session["venmo_username"]
        if not recipient:
            raise HTTPException(status_code=400, detail="Session owner has no Venmo username")
        link = build_venmo_link(recipient, amount, req.note)
        response.update({"status": "initiated", "deep_link": link, "amount": format_amount(amount)})
        reference = link
    else:
        result = mock_apple_pay(amount)
        response.update(result)
        reference = result["transaction_id"]

    try:
        with get_db_conn() as conn:
            conn.execute(
                """
                INSERT INTO payments (session_id, participant_id, method, amount, reference, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (session_id, participant_id, req.method, amount, reference, utc_now()),
            )
            conn.commit()
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Share already paid")
    change_feed.publish(session_id, "payment_recorded")
    logger.info("[pay] %s paid %s via %s in %s", participant_id, format_amount(amount), req.method, session_id)
    return response


@app.get("/session/{session_id}/collection")
async def collection_status(session_id: str):
    summary = compute_session_summary(session_id)
    payments = fetch_payments(session_id)
    # Only money someone owes can be collected; unassigned money is reported apart.
    allocated = summary["allocated_total"]
    collected = round(sum(float(p["amount"]) for p in payments.values()), 2)
    remaining = round(max(0.0, allocated - collected), 2)
    return {
        "session_id": session_id,
        "total_amount": summary["total_amount"],
        "allocated_total": allocated,
        "unassigned_amount": summary["unassigned_amount"],
        "collected_amount": collected,
        "remaining_amount": remaining,
        "participants": summary["participant_count"],
        "participants_paid": len(payments),
        "fully_collected": allocated > 0 and remaining <= 0,
        "payments": [
            {"participant_id": pid, "method": p["method"], "amount": p["amount"], "created_at": p["created_at"]}
            for pid, p in payments.items()
        ],
    }
