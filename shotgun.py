import logging
import os
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests
from bson.objectid import ObjectId
from pymongo.collection import Collection

from renumbering import EventSequence, pending_event_number

logger = logging.getLogger(__name__)

SHOTGUN_API_URL = os.environ.get("SHOTGUN_API_URL", "https://smartboard-api.shotgun.live/api/shotgun").rstrip("/")
SHOTGUN_ORGANIZER_ID = os.environ.get("SHOTGUN_ORGANIZER_ID", "")
SHOTGUN_API_TOKEN = os.environ.get("SHOTGUN_API_TOKEN", "")
SHOTGUN_DEFAULT_CITY = os.environ.get("SHOTGUN_DEFAULT_CITY", "Lille")
SHOTGUN_PAGE_SIZE = 100
SHOTGUN_TIMEOUT_SECONDS = 10


class ShotgunError(Exception):
    pass


class ShotgunClient:
    """Read-only client for an organizer's events on the Shotgun ticketing API."""

    def __init__(self, organizer_id: str, api_token: str, base_url: str = SHOTGUN_API_URL,
                 page_size: int = SHOTGUN_PAGE_SIZE, timeout: int = SHOTGUN_TIMEOUT_SECONDS):
        self.organizer_id = organizer_id
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "ShotgunClient":
        if not SHOTGUN_ORGANIZER_ID:
            logger.warning("SHOTGUN_ORGANIZER_ID not configured")
        if not SHOTGUN_API_TOKEN:
            logger.warning("SHOTGUN_API_TOKEN not configured")
        return cls(SHOTGUN_ORGANIZER_ID, SHOTGUN_API_TOKEN)

    @property
    def events_url(self) -> str:
        return f"{self.base_url}/organizers/{self.organizer_id}/events"

    def _get_page(self, page: int) -> list[dict]:
        params = {
            "key": self.api_token,
            "past_events": "false",
            "page": page,
            "limit": self.page_size,
        }
        try:
            resp = requests.get(self.events_url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except requests.exceptions.RequestException as exc:
            logger.error(f"[SHOTGUN] page {page} request failed: {exc}")
            raise ShotgunError(f"Failed to fetch Shotgun events: {exc}") from exc
        except ValueError as exc:
            raise ShotgunError(f"Shotgun returned an invalid payload: {exc}") from exc
        return payload.get("data") or []

    def fetch_organizer_events(self) -> list[dict]:
        """Fetch every upcoming event, following pages until a short one."""
        if not self.organizer_id or not self.api_token:
            raise ShotgunError("Shotgun credentials are not configured")
        events: list[dict] = []
        page = 0
        while True:
            batch = self._get_page(page)
            events.extend(batch)
            logger.info(f"[SHOTGUN] page {page + 1}: {len(batch)} events")
            if len(batch) < self.page_size:
                break
            page += 1
        logger.info(f"[SHOTGUN] fetched {len(events)} events")
        return events

    def fetch_event(self, shotgun_id: int) -> dict:
        for event in self.fetch_organizer_events():
            if event.get("id") == shotgun_id:
                return event
        raise ShotgunError(f"Event {shotgun_id} not found")

    def test_connection(self) -> bool:
        try:
            self.fetch_organizer_events()
        except ShotgunError as exc:
            logger.warning(f"[SHOTGUN] connection test failed: {exc}")
            return False
        return True


def parse_start_time(value: str | None, tz_name: str | None = None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    if tz_name:
        try:
            dt = dt.astimezone(ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return dt


def map_shotgun_event(event: dict, default_city: str = SHOTGUN_DEFAULT_CITY, now: datetime | None = None) -> dict:
    """Convert a Shotgun event into the fields of a local event document."""
    if event.get("id") is None:
        raise ShotgunError(f"Event \"{event.get('name')}\" has no Shotgun id")
    start = parse_start_time(event.get("startTime"), event.get("timezone"))
    if start is None:
        raise ShotgunError(f"Event {event.get('id')} has no valid startTime")
    now = now or datetime.now(timezone.utc)
    geo = event.get("geolocation") or {}
    genres = [g.get("name") for g in event.get("genres") or [] if isinstance(g, dict) and g.get("name")]
    return {
        "title": event.get("name") or "",
        "city": geo.get("venue") or geo.get("city") or default_city,
        "country": "",
        "date": start.astimezone(timezone.utc),
        "time": start.strftime("%H:%M"),
        "genres": genres,
        "ticketLink": event.get("url") or "",
        "isPast": start < now,
        "imageSrc": event.get("coverUrl") or event.get("coverThumbnailUrl") or "",
        "imagePublicId": "",
        "shotgunId": event.get("id"),
    }


def upsert_shotgun_event(collection: Collection, mapped: dict) -> tuple[dict, bool]:
    """Update the event linked to ``shotgunId`` or insert it; returns (doc, created)."""
    now = datetime.now(timezone.utc)
    existing = collection.find_one({"shotgunId": mapped["shotgunId"]})
    if existing:
        collection.update_one({"_id": existing["_id"]}, {"$set": {**mapped, "updatedAt": now}})
        return {**existing, **mapped, "updatedAt": now}, False
    oid = ObjectId()
    doc = {
        **mapped,
        "_id": oid,
        "eventNumber": pending_event_number(oid),
        "order": 0,
        "isHidden": False,
        "isFeatured": False,
        "isFree": False,
        "createdAt": now,
        "updatedAt": now,
    }
    collection.insert_one(doc)
    return doc, True


def sync_all_events(collection: Collection, client: ShotgunClient, sequence: EventSequence,
                    default_city: str = SHOTGUN_DEFAULT_CITY) -> dict:
    result = {"created": 0, "updated": 0, "errors": [], "events": []}
    logger.info("[SHOTGUN] starting synchronization")
    try:
        remote_events = client.fetch_organizer_events()
    except ShotgunError as exc:
        logger.error(f"[SHOTGUN] sync failed: {exc}")
        result["errors"].append(f"Sync failed: {exc}")
        return result

    def upsert_all():
        for remote in remote_events:
            name = remote.get("name") or remote.get("id")
            try:
                mapped = map_shotgun_event(remote, default_city)
                if not mapped["imageSrc"]:
                    logger.warning(f"[SHOTGUN] skipping \"{name}\": no image available")
                    result["errors"].append(f"Event \"{name}\": no image available")
                    continue
                doc, created = upsert_shotgun_event(collection, mapped)
            except Exception as exc:
                logger.error(f"[SHOTGUN] failed to sync \"{name}\": {exc}")
                result["errors"].append(f"Failed to sync event \"{name}\": {exc}")
                continue
            result["created" if created else "updated"] += 1
            result["events"].append(doc)
        return result["created"]

    # new events get numbered in the same turn of the gate as their insert
    if sequence.apply(upsert_all):
        ids = [doc["_id"] for doc in result["events"]]
        result["events"] = list(collection.find({"_id": {"$in": ids}}))
    logger.info(
        f"[SHOTGUN] sync completed: {result['created']} created, "
        f"{result['updated']} updated, {len(result['errors'])} errors"
    )
    return result


def sync_event(collection: Collection, client: ShotgunClient, sequence: EventSequence, shotgun_id: int,
               default_city: str = SHOTGUN_DEFAULT_CITY) -> dict:
    mapped = map_shotgun_event(client.fetch_event(shotgun_id), default_city)
    upserted = {}

    def upsert():
        upserted["doc"], created = upsert_shotgun_event(collection, mapped)
        return created

    if sequence.apply(upsert):
        return collection.find_one({"_id": upserted["doc"]["_id"]}) or upserted["doc"]
    return upserted["doc"]
