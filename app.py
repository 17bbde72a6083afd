import os
import logging
import hmac
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from functools import wraps
from urllib.parse import urlparse

import bcrypt
import jwt
from dotenv import load_dotenv
from flask import Flask, request, jsonify, g
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from pymongo import MongoClient, errors
from pymongo.collection import Collection
from bson.objectid import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, Field, ValidationError, field_validator

# local modules read their settings from the environment at import
load_dotenv()

from renumbering import (
    EventSequence,
    InvalidPermutation,
    RenumberGate,
    pending_event_number,
)
import shotgun

# --- App setup ---
app = Flask(__name__)
app.config["RATELIMIT_HEADERS_ENABLED"] = True
logging.basicConfig(level=logging.INFO)

CORS_ORIGINS = [
    origin.strip()
    for origin in (os.environ.get("CORS_ORIGINS") or "http://localhost:5173").split(",")
    if origin.strip()
]
CORS(app, origins=CORS_ORIGINS, supports_credentials=True)
limiter = Limiter(get_remote_address, app=app)

MONGODB_URI = os.environ.get("MONGODB_URI")
MONGODB_DB = os.environ.get("MONGODB_DB", "mercilille")
COOKIE_SECURE = os.environ.get("COOKIE_SECURE", "").lower() in ("1", "true", "yes")

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)
CSRF_TOKEN_TTL = timedelta(hours=12)
MAX_ACTIVE_REFRESH_TOKENS = 5
ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
CSRF_COOKIE = "csrfToken"
CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"
USERNAME_PATTERN = r"^[a-zA-Z0-9_.@-]+$"
DATETIME_FIELDS = ("date", "createdAt", "updatedAt")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_datetime(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def isoformat_or_none(value) -> str | None:
    dt = parse_datetime(value)
    if not dt:
        return None
    return dt.isoformat().replace("+00:00", "Z")


def is_http_url(raw: str | None) -> bool:
    try:
        parsed = urlparse((raw or "").strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def parse_object_id(value) -> ObjectId | None:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: dict | None) -> dict:
    data = dict(doc or {})
    if "_id" in data:
        data["_id"] = str(data["_id"])
    for key in DATETIME_FIELDS:
        if isinstance(data.get(key), datetime):
            data[key] = isoformat_or_none(data[key])
    return data


# --- Mongo helpers ---
def ensure_index(coll: Collection, keys, name: str, **kwargs):
    info = coll.index_information()
    if name in info:
        meta = info[name]
        same_keys = meta.get("key") == list(keys)
        same_unique = bool(meta.get("unique", False)) == bool(kwargs.get("unique", False))
        same_pfe = meta.get("partialFilterExpression") == kwargs.get("partialFilterExpression")
        same_ttl = meta.get("expireAfterSeconds") == kwargs.get("expireAfterSeconds")
        if same_keys and same_unique and same_pfe and same_ttl:
            return
        try:
            coll.drop_index(name)
        except Exception as e:
            app.logger.warning(f"Drop index {name} failed: {e}")
    coll.create_index(list(keys), name=name, **kwargs)


def ensure_indexes():
    ensure_index(events_collection, [("eventNumber", 1)], name="unique_eventNumber", unique=True)
    ensure_index(events_collection, [("order", 1), ("createdAt", -1)], name="order_created")
    ensure_index(
        events_collection,
        [("shotgunId", 1)],
        name="unique_shotgunId",
        unique=True,
        partialFilterExpression={"shotgunId": {"$type": "number"}},
    )
    ensure_index(gallery_collection, [("createdAt", -1)], name="created_desc")
    ensure_index(refresh_tokens_collection, [("tokenHash", 1)], name="unique_tokenHash", unique=True)
    ensure_index(refresh_tokens_collection, [("expiresAt", 1)], name="expires_ttl", expireAfterSeconds=0)


# --- Mongo connection + index hygiene ---
events_collection: Collection | None = None
gallery_collection: Collection | None = None
refresh_tokens_collection: Collection | None = None

if MONGODB_URI:
    try:
        client = MongoClient(MONGODB_URI)
        db = client[MONGODB_DB]
        events_collection = db.events
        gallery_collection = db.gallery
        refresh_tokens_collection = db.refresh_tokens
        ensure_indexes()
        app.logger.info("Connected to MongoDB and ensured indexes.")
    except Exception as e:
        app.logger.error(f"Error connecting to MongoDB: {e}")
        events_collection = None
        gallery_collection = None
        refresh_tokens_collection = None
else:
    app.logger.warning("MONGODB_URI not configured; data routes will answer 503.")

# all renumbering in this process goes through this gate
renumber_gate = RenumberGate()
shotgun_client = shotgun.ShotgunClient.from_env()


def event_sequence() -> EventSequence:
    return EventSequence(events_collection, renumber_gate)


def needs_db(*names):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if any(globals().get(name) is None for name in names):
                app.logger.error("Database unavailable; rejecting request.")
                return jsonify({"message": "Database unavailable."}), 503
            return f(*args, **kwargs)
        return decorated_function
    return decorator


# --- Auth ---
JWT_SECRET = os.environ.get("JWT_SECRET", "")
REFRESH_JWT_SECRET = os.environ.get("REFRESH_JWT_SECRET", "")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "")
ADMIN_HASH = os.environ.get("ADMIN_PASSWORD_HASH", "").encode()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def set_auth_cookie(response, name: str, value: str, ttl: timedelta, httponly: bool = True):
    response.set_cookie(
        name,
        value,
        max_age=int(ttl.total_seconds()),
        httponly=httponly,
        secure=COOKIE_SECURE,
        samesite="Strict",
        path="/",
    )


def new_csrf_token() -> str:
    return secrets.token_hex(32)


def set_csrf_cookie(response, token: str):
    # readable by the client for the double-submit check
    set_auth_cookie(response, CSRF_COOKIE, token, CSRF_TOKEN_TTL, httponly=False)


def issue_access_token(admin_id: str) -> str:
    exp = utcnow() + ACCESS_TOKEN_TTL
    token = jwt.encode({"id": admin_id, "type": "access", "exp": exp}, JWT_SECRET, algorithm="HS256")
    if isinstance(token, bytes):
        token = token.decode()
    return token


def issue_refresh_token(admin_id: str) -> tuple[str, datetime]:
    expires_at = utcnow() + REFRESH_TOKEN_TTL
    token = jwt.encode(
        {"id": admin_id, "type": "refresh", "jti": secrets.token_hex(16), "exp": expires_at},
        REFRESH_JWT_SECRET,
        algorithm="HS256",
    )
    if isinstance(token, bytes):
        token = token.decode()
    return token, expires_at


def auth_error(error: str, status: int = 401, **extra):
    return jsonify({"message": "Authentication required", "error": error, **extra}), status


def protect(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not JWT_SECRET:
            app.logger.error("JWT secret not configured; rejecting protected request.")
            return jsonify({"message": "Server misconfigured."}), 500
        token = request.cookies.get(ACCESS_COOKIE)
        from_cookie = bool(token)
        if not token:
            auth_header = request.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return auth_error("No token provided")
        try:
            payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            return auth_error("Token has expired", expired=True)
        except jwt.InvalidTokenError:
            return auth_error("Invalid token")
        if not payload.get("id"):
            return auth_error("Invalid token payload")
        if payload.get("type", "access") != "access":
            return auth_error("Invalid token type for this operation")
        if from_cookie and request.method not in SAFE_METHODS:
            cookie_token = request.cookies.get(CSRF_COOKIE)
            header_token = request.headers.get(CSRF_HEADER)
            if not cookie_token or not header_token:
                return jsonify({"message": "CSRF token missing"}), 403
            if not hmac.compare_digest(cookie_token.encode(), header_token.encode()):
                return jsonify({"message": "Invalid CSRF token"}), 403
        g.admin = {"id": payload["id"]}
        return f(*args, **kwargs)
    return decorated_function


def apply_security_headers(response):
    """Apply a minimal set of security headers on every response."""
    headers = getattr(response, "headers", None)
    if headers is None:
        return response
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("Referrer-Policy", "same-origin")
    headers.setdefault("X-XSS-Protection", "1; mode=block")
    return response


app.after_request(apply_security_headers)


@app.route("/api/health", methods=["GET"])
def health():
    """Lightweight health-check endpoint used by monitoring probes."""
    return jsonify({"status": "ok", "database": events_collection is not None}), 200


# --- Schemas ---
class LoginRequest(BaseModel):
    username: str = Field(min_length=3, max_length=100, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    class Config:
        extra = "forbid"
        str_strip_whitespace = True


class EventFieldsModel(BaseModel):
    class Config:
        extra = "forbid"
        str_strip_whitespace = True

    @field_validator("genres", check_fields=False)
    @classmethod
    def check_genres(cls, value):
        if value is None:
            return value
        cleaned = [genre.strip() for genre in value]
        if any(not genre or len(genre) > 50 for genre in cleaned):
            raise ValueError("Each genre must be between 1 and 50 characters")
        return cleaned

    @field_validator("ticketLink", "imageSrc", check_fields=False)
    @classmethod
    def check_url(cls, value):
        if value is not None and not is_http_url(value):
            raise ValueError("Must be a valid http(s) URL")
        return value


class EventCreateSchema(EventFieldsModel):
    title: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    country: str = Field("", max_length=100)
    date: datetime
    time: str = Field(pattern=TIME_PATTERN)
    isFree: bool = False
    genres: list[str] = []
    ticketLink: str = Field(max_length=500)
    isPast: bool = False
    isFeatured: bool = False
    imageSrc: str = Field(max_length=500)
    imagePublicId: str = ""


class EventUpdateSchema(EventFieldsModel):
    title: str | None = Field(None, min_length=1, max_length=200)
    city: str | None = Field(None, min_length=1, max_length=100)
    country: str | None = Field(None, max_length=100)
    date: datetime | None = None
    time: str | None = Field(None, pattern=TIME_PATTERN)
    isFree: bool | None = None
    genres: list[str] | None = None
    ticketLink: str | None = Field(None, max_length=500)
    isPast: bool | None = None
    imageSrc: str | None = Field(None, max_length=500)
    imagePublicId: str | None = None


class EventOrderSchema(BaseModel):
    orderedIds: list[str]
    class Config:
        extra = "forbid"


class EventIdsSchema(BaseModel):
    eventIds: list[str] = Field(min_length=1)
    class Config:
        extra = "forbid"


class GalleryImageSchema(EventFieldsModel):
    imageSrc: str = Field(max_length=500)
    imagePublicId: str = ""
    title: str | None = Field(None, max_length=200)
    description: str | None = Field(None, max_length=1000)


def validation_error(ve: ValidationError, message: str = "Invalid request"):
    app.logger.warning(f"[VALIDATION] {ve}")
    details = [
        {"field": ".".join(str(part) for part in err.get("loc", ())) or "unknown", "message": err.get("msg")}
        for err in ve.errors()
    ]
    return jsonify({"message": message, "errors": details}), 400


def object_ids_or_none(raw_ids: list[str]) -> list[ObjectId] | None:
    ids = [parse_object_id(raw) for raw in raw_ids]
    if any(oid is None for oid in ids):
        return None
    return ids


# --- Auth routes ---
@app.route("/api/auth/csrf", methods=["GET"])
def csrf_token():
    token = new_csrf_token()
    response = jsonify({"csrfToken": token})
    set_csrf_cookie(response, token)
    return response, 200


@app.route("/api/auth/login", methods=["POST"])
@limiter.limit("5 per 15 minutes", deduct_when=lambda response: response.status_code == 401)
@needs_db("refresh_tokens_collection")
def admin_login():
    payload = request.get_json(silent=True) or {}
    try:
        req = LoginRequest(**payload)
    except ValidationError as ve:
        return validation_error(ve, "Invalid credentials format")
    if not ADMIN_USERNAME or not ADMIN_HASH or not JWT_SECRET or not REFRESH_JWT_SECRET:
        app.logger.error("Admin credentials or token secrets missing; refusing login attempt.")
        return jsonify({"message": "Server misconfigured."}), 500
    try:
        hashed_attempt = bcrypt.hashpw(req.password.encode(), ADMIN_HASH)
    except ValueError:
        hashed_attempt = b""
    same_user = hmac.compare_digest(req.username.encode(), ADMIN_USERNAME.encode())
    if not (same_user and hmac.compare_digest(hashed_attempt, ADMIN_HASH)):
        return jsonify({"message": "Invalid credentials"}), 401

    try:
        active = list(
            refresh_tokens_collection.find({"adminId": ADMIN_USERNAME, "isRevoked": False}).sort("createdAt", -1)
        )
        if len(active) >= MAX_ACTIVE_REFRESH_TOKENS:
            stale = [doc["_id"] for doc in active[MAX_ACTIVE_REFRESH_TOKENS - 1:]]
            refresh_tokens_collection.update_many({"_id": {"$in": stale}}, {"$set": {"isRevoked": True}})

        refresh_token, expires_at = issue_refresh_token(ADMIN_USERNAME)
        refresh_tokens_collection.insert_one({
            "tokenHash": hash_token(refresh_token),
            "adminId": ADMIN_USERNAME,
            "createdAt": utcnow(),
            "expiresAt": expires_at,
            "ipAddress": request.remote_addr,
            "userAgent": request.headers.get("User-Agent"),
            "isRevoked": False,
        })
    except Exception as e:
        app.logger.error(f"[DB] Login failed: {e}")
        return jsonify({"message": "Server error"}), 500

    csrf = new_csrf_token()
    response = jsonify({
        "message": "Login successful",
        "expiresIn": int(ACCESS_TOKEN_TTL.total_seconds()),
        "csrfToken": csrf,
    })
    set_auth_cookie(response, ACCESS_COOKIE, issue_access_token(ADMIN_USERNAME), ACCESS_TOKEN_TTL)
    set_auth_cookie(response, REFRESH_COOKIE, refresh_token, REFRESH_TOKEN_TTL)
    set_csrf_cookie(response, csrf)
    return response, 200


@app.route("/api/auth/refresh", methods=["POST"])
@needs_db("refresh_tokens_collection")
def refresh_access_token():
    if not JWT_SECRET or not REFRESH_JWT_SECRET:
        app.logger.error("Token secrets are not defined")
        return jsonify({"message": "Server error"}), 500
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        return jsonify({"message": "Refresh token required"}), 401
    try:
        stored = refresh_tokens_collection.find_one({"tokenHash": hash_token(refresh_token), "isRevoked": False})
        if not stored:
            return jsonify({"message": "Invalid refresh token"}), 401
        expires_at = parse_datetime(stored.get("expiresAt"))
        if not expires_at or expires_at < utcnow():
            return jsonify({"message": "Refresh token expired"}), 401
        decoded = jwt.decode(refresh_token, REFRESH_JWT_SECRET, algorithms=["HS256"])
        if decoded.get("type") != "refresh":
            return jsonify({"message": "Invalid token type"}), 401
        refresh_tokens_collection.update_one({"_id": stored["_id"]}, {"$set": {"lastUsedAt": utcnow()}})
    except jwt.InvalidTokenError:
        return jsonify({"message": "Invalid refresh token"}), 401
    except Exception as e:
        app.logger.error(f"[DB] Token refresh failed: {e}")
        return jsonify({"message": "Server error"}), 500

    csrf = new_csrf_token()
    response = jsonify({
        "message": "Token refreshed successfully",
        "expiresIn": int(ACCESS_TOKEN_TTL.total_seconds()),
        "csrfToken": csrf,
    })
    set_auth_cookie(response, ACCESS_COOKIE, issue_access_token(decoded["id"]), ACCESS_TOKEN_TTL)
    set_csrf_cookie(response, csrf)
    return response, 200


@app.route("/api/auth/logout", methods=["POST"])
@needs_db("refresh_tokens_collection")
def logout():
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    try:
        if refresh_token:
            refresh_tokens_collection.update_one(
                {"tokenHash": hash_token(refresh_token)}, {"$set": {"isRevoked": True}}
            )
    except Exception as e:
        app.logger.error(f"[DB] Logout failed: {e}")
        return jsonify({"message": "Server error"}), 500
    response = jsonify({"message": "Logged out successfully"})
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, CSRF_COOKIE):
        response.delete_cookie(name, path="/")
    return response, 200


@app.route("/api/auth/verify", methods=["GET"])
@protect
def verify_token():
    return jsonify({"valid": True, "admin": g.admin}), 200


# --- Events: public ---
@app.route("/api/events", methods=["GET"])
@limiter.limit("100 per minute")
@needs_db("events_collection")
def list_events():
    include_hidden = request.args.get("includeHidden") == "true"
    query = {} if include_hidden else {"isHidden": {"$ne": True}}
    try:
        docs = events_collection.find(query).sort([("order", 1), ("createdAt", -1)])
        return jsonify([serialize_doc(doc) for doc in docs]), 200
    except Exception as e:
        app.logger.error(f"[DB] Error fetching events: {e}")
        return jsonify({"message": "Error fetching events"}), 500


@app.route("/api/events/<event_id>", methods=["GET"])
@limiter.limit("100 per minute")
@needs_db("events_collection")
def get_event(event_id):
    obj_id = parse_object_id(event_id)
    if obj_id is None:
        return jsonify({"message": "Invalid event id"}), 400
    try:
        doc = events_collection.find_one({"_id": obj_id})
    except Exception as e:
        app.logger.error(f"[DB] Error fetching event {event_id}: {e}")
        return jsonify({"message": "Error fetching event"}), 500
    if not doc:
        return jsonify({"message": "Event not found"}), 404
    return jsonify(serialize_doc(doc)), 200


# --- Events: admin ---
@app.route("/api/events", methods=["POST"])
@limiter.limit("100 per minute")
@protect
@needs_db("events_collection")
def create_event():
    payload = request.get_json(silent=True) or {}
    try:
        req = EventCreateSchema(**payload)
    except ValidationError as ve:
        return validation_error(ve, "Invalid event data")
    obj_id = ObjectId()
    now = utcnow()
    doc = req.model_dump()
    doc.update({
        "_id": obj_id,
        "eventNumber": pending_event_number(obj_id),
        "order": 0,
        "isHidden": False,
        "createdAt": now,
        "updatedAt": now,
    })
    try:
        event_sequence().apply(lambda: events_collection.insert_one(doc).inserted_id)
        created = events_collection.find_one({"_id": obj_id}) or doc
        return jsonify(serialize_doc(created)), 201
    except Exception as e:
        app.logger.error(f"[DB] Error creating event: {e}")
        return jsonify({"message": "Error creating event"}), 500


@app.route("/api/events/update-order", methods=["PUT"])
@protect
@needs_db("events_collection")
def update_event_order():
    payload = request.get_json(silent=True) or {}
    try:
        req = EventOrderSchema(**payload)
    except ValidationError as ve:
        return validation_error(ve, "Invalid ordered IDs provided")
    ids = object_ids_or_none(req.orderedIds)
    if ids is None:
        return jsonify({"message": "orderedIds must be valid ObjectIds"}), 400
    try:
        event_sequence().update_order(ids)
        return jsonify({"message": "Event order updated successfully"}), 200
    except InvalidPermutation as e:
        return jsonify({"message": str(e)}), 400
    except Exception as e:
        app.logger.error(f"[DB] Error updating event order: {e}")
        return jsonify({"message": "Error updating event order"}), 500


@app.route("/api/events/<event_id>", methods=["PUT"])
@limiter.limit("100 per minute")
@protect
@needs_db("events_collection")
def update_event(event_id):
    obj_id = parse_object_id(event_id)
    if obj_id is None:
        return jsonify({"message": "Invalid event id"}), 400
    payload = request.get_json(silent=True) or {}
    try:
        data = EventUpdateSchema(**payload).model_dump(exclude_unset=True)
    except ValidationError as ve:
        return validation_error(ve, "Invalid event data")
    if not data:
        return jsonify({"message": "No valid fields provided."}), 400
    data["updatedAt"] = utcnow()
    try:
        result = events_collection.update_one({"_id": obj_id}, {"$set": data})
        if result.matched_count == 0:
            return jsonify({"message": "Event not found"}), 404
        return jsonify(serialize_doc(events_collection.find_one({"_id": obj_id}))), 200
    except Exception as e:
        app.logger.error(f"[DB] Error updating event {event_id}: {e}")
        return jsonify({"message": "Error updating event"}), 500


@app.route("/api/events/<event_id>", methods=["DELETE"])
@limiter.limit("100 per minute")
@protect
@needs_db("events_collection")
def delete_event(event_id):
    obj_id = parse_object_id(event_id)
    if obj_id is None:
        return jsonify({"message": "Invalid event id"}), 400
    try:
        deleted = event_sequence().apply(lambda: events_collection.delete_one({"_id": obj_id}).deleted_count)
        if not deleted:
            return jsonify({"message": "Event not found"}), 404
        return jsonify({"message": "Event deleted successfully"}), 200
    except Exception as e:
        app.logger.error(f"[DB] Error deleting event {event_id}: {e}")
        return jsonify({"message": "Error deleting event"}), 500


def set_event_flag(event_id: str, field: str, value: bool, renumber: bool, action: str):
    obj_id = parse_object_id(event_id)
    if obj_id is None:
        return jsonify({"message": "Invalid event id"}), 400
    try:
        def write():
            return events_collection.update_one(
                {"_id": obj_id}, {"$set": {field: value, "updatedAt": utcnow()}}
            ).matched_count

        matched = event_sequence().apply(write) if renumber else write()
        if not matched:
            return jsonify({"message": "Event not found"}), 404
        return jsonify(serialize_doc(events_collection.find_one({"_id": obj_id}))), 200
    except Exception as e:
        app.logger.error(f"[DB] Error {action} event {event_id}: {e}")
        return jsonify({"message": f"Error {action} event"}), 500


def set_events_flag(field: str, value: bool, renumber: bool, done: str, action: str):
    payload = request.get_json(silent=True) or {}
    try:
        req = EventIdsSchema(**payload)
    except ValidationError as ve:
        return validation_error(ve, "Invalid event IDs provided")
    ids = object_ids_or_none(req.eventIds)
    if ids is None:
        return jsonify({"message": "eventIds must be valid ObjectIds"}), 400
    try:
        def write():
            return events_collection.update_many(
                {"_id": {"$in": ids}}, {"$set": {field: value, "updatedAt": utcnow()}}
            ).matched_count

        if renumber:
            event_sequence().apply(write)
        else:
            write()
        return jsonify({"message": f"{len(ids)} event(s) {done} successfully"}), 200
    except Exception as e:
        app.logger.error(f"[DB] Error {action} events: {e}")
        return jsonify({"message": f"Error {action} events"}), 500


@app.route("/api/events/<event_id>/hide", methods=["PATCH"])
@protect
@needs_db("events_collection")
def hide_event(event_id):
    return set_event_flag(event_id, "isHidden", True, renumber=True, action="hiding")


@app.route("/api/events/<event_id>/unhide", methods=["PATCH"])
@protect
@needs_db("events_collection")
def unhide_event(event_id):
    return set_event_flag(event_id, "isHidden", False, renumber=True, action="unhiding")


@app.route("/api/events/hide-multiple", methods=["POST"])
@protect
@needs_db("events_collection")
def hide_events():
    return set_events_flag("isHidden", True, renumber=True, done="hidden", action="hiding")


@app.route("/api/events/unhide-multiple", methods=["POST"])
@protect
@needs_db("events_collection")
def unhide_events():
    return set_events_flag("isHidden", False, renumber=True, done="unhidden", action="unhiding")


@app.route("/api/events/renumber-all", methods=["POST"])
@protect
@needs_db("events_collection")
def renumber_all_events():
    try:
        count = event_sequence().renumber_visible()
        return jsonify({"message": "All visible events renumbered successfully", "count": count}), 200
    except Exception as e:
        app.logger.error(f"[DB] Error renumbering events: {e}")
        return jsonify({"message": "Error renumbering events"}), 500


@app.route("/api/events/<event_id>/feature", methods=["PATCH"])
@protect
@needs_db("events_collection")
def feature_event(event_id):
    return set_event_flag(event_id, "isFeatured", True, renumber=False, action="featuring")


@app.route("/api/events/<event_id>/unfeature", methods=["PATCH"])
@protect
@needs_db("events_collection")
def unfeature_event(event_id):
    return set_event_flag(event_id, "isFeatured", False, renumber=False, action="unfeaturing")


@app.route("/api/events/feature-multiple", methods=["POST"])
@protect
@needs_db("events_collection")
def feature_events():
    return set_events_flag("isFeatured", True, renumber=False, done="marked as featured", action="featuring")


@app.route("/api/events/unfeature-multiple", methods=["POST"])
@protect
@needs_db("events_collection")
def unfeature_events():
    return set_events_flag("isFeatured", False, renumber=False, done="unmarked as featured", action="unfeaturing")


# --- Gallery ---
@app.route("/api/gallery", methods=["GET"])
@limiter.limit("100 per minute")
@needs_db("gallery_collection")
def list_gallery():
    try:
        docs = gallery_collection.find().sort("createdAt", -1)
        return jsonify([serialize_doc(doc) for doc in docs]), 200
    except Exception as e:
        app.logger.error(f"[DB] Error fetching gallery images: {e}")
        return jsonify({"message": "Error fetching gallery images"}), 500


@app.route("/api/gallery", methods=["POST"])
@limiter.limit("10 per minute")
@protect
@needs_db("gallery_collection")
def add_gallery_image():
    payload = request.get_json(silent=True) or {}
    try:
        req = GalleryImageSchema(**payload)
    except ValidationError as ve:
        return validation_error(ve, "Invalid gallery image")
    doc = req.model_dump()
    doc["imagePublicId"] = doc["imagePublicId"] or f"gallery_{int(utcnow().timestamp() * 1000)}"
    doc["createdAt"] = utcnow()
    try:
        res = gallery_collection.insert_one(doc)
        doc["_id"] = res.inserted_id
        return jsonify(serialize_doc(doc)), 201
    except Exception as e:
        app.logger.error(f"[DB] Error adding gallery image: {e}")
        return jsonify({"message": "Error adding gallery image"}), 500


@app.route("/api/gallery/<image_id>", methods=["DELETE"])
@limiter.limit("10 per minute")
@protect
@needs_db("gallery_collection")
def delete_gallery_image(image_id):
    obj_id = parse_object_id(image_id)
    if obj_id is None:
        return jsonify({"message": "Invalid image id"}), 400
    try:
        result = gallery_collection.delete_one({"_id": obj_id})
        if result.deleted_count == 0:
            return jsonify({"message": "Image not found"}), 404
        return jsonify({"message": "Image deleted successfully"}), 200
    except Exception as e:
        app.logger.error(f"[DB] Error deleting gallery image {image_id}: {e}")
        return jsonify({"message": "Error deleting gallery image"}), 500


# --- Shotgun sync ---
@app.route("/api/shotgun-sync/test", methods=["GET"])
@protect
def shotgun_test():
    if shotgun_client.test_connection():
        return jsonify({"success": True, "message": "Connection to Shotgun API successful"}), 200
    return jsonify({"success": False, "message": "Failed to connect to Shotgun API"}), 500


@app.route("/api/shotgun-sync/preview", methods=["GET"])
@protect
def shotgun_preview():
    try:
        events = shotgun_client.fetch_organizer_events()
    except shotgun.ShotgunError as e:
        return jsonify({"success": False, "message": "Failed to fetch events from Shotgun", "error": str(e)}), 500
    return jsonify({"success": True, "message": f"Found {len(events)} events on Shotgun", "data": events}), 200


@app.route("/api/shotgun-sync/sync-all", methods=["POST"])
@protect
@needs_db("events_collection")
def shotgun_sync_all():
    try:
        result = shotgun.sync_all_events(events_collection, shotgun_client, event_sequence())
    except Exception as e:
        app.logger.error(f"[SHOTGUN] sync-all failed: {e}")
        return jsonify({"success": False, "message": "Failed to sync events from Shotgun", "error": str(e)}), 500
    return jsonify({
        "success": True,
        "message": f"Synchronization completed: {result['created']} created, {result['updated']} updated",
        "data": {
            "created": result["created"],
            "updated": result["updated"],
            "errors": result["errors"],
            "events": [serialize_doc(doc) for doc in result["events"]],
        },
    }), 200


@app.route("/api/shotgun-sync/sync-event/<shotgun_id>", methods=["POST"])
@protect
@needs_db("events_collection")
def shotgun_sync_event(shotgun_id):
    try:
        numeric_id = int(shotgun_id)
    except ValueError:
        return jsonify({"success": False, "message": "Invalid Shotgun event ID"}), 400
    try:
        doc = shotgun.sync_event(events_collection, shotgun_client, event_sequence(), numeric_id)
    except Exception as e:
        app.logger.error(f"[SHOTGUN] sync-event {numeric_id} failed: {e}")
        return jsonify({"success": False, "message": "Failed to sync event", "error": str(e)}), 500
    return jsonify({"success": True, "message": "Event synchronized successfully", "data": serialize_doc(doc)}), 200


@app.errorhandler(errors.PyMongoError)
def handle_mongo_error(e):
    app.logger.error(f"[DB] Unhandled database error: {e}")
    return jsonify({"message": "Database error"}), 500


if __name__ == "__main__":
    flask_env = os.environ.get("FLASK_ENV", "production").lower()
    debug = flask_env == "development" or (
        flask_env != "production"
        and os.environ.get("DEBUG", "").lower() in ("1", "true", "yes")
    )
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=debug)
