# notifier/store.py
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from notifier.errors import EventNotFound
from notifier.models import Event, utcnow
from notifier.schemas import EventQuery, serialize_event, split_fields

logger = logging.getLogger(__name__)

DEFAULT_TAKE = 50
MAX_PAGE_SIZE = 200

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def resolve_window(query: EventQuery) -> Tuple[int, int]:
    """
    Return ``(skip, take)`` for a list query.

    ``page`` (1-based) with ``page_size`` wins over ``skip``/``take``; the page
    size is capped at MAX_PAGE_SIZE either way.
    """
    if query.page is not None:
        take = min(query.page_size or DEFAULT_TAKE, MAX_PAGE_SIZE)
        skip = (max(1, query.page) - 1) * take
    else:
        take = min(query.take or DEFAULT_TAKE, MAX_PAGE_SIZE)
        skip = max(0, query.skip or 0)
    return skip, take


def _filters(query: EventQuery) -> list:
    clauses = []
    if query.event_type:
        clauses.append(Event.event_type == query.event_type)
    term = (query.search or "").strip()
    if term:
        clauses.append(or_(
            Event.event_type.contains(term, autoescape=True),
            Event.audio_url.contains(term, autoescape=True),
            Event.image_url.contains(term, autoescape=True),
        ))
    return clauses


def _row_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    columns, extras = split_fields(fields)
    values = dict(columns)
    if extras:
        values["payload"] = extras
    return values


def _merge_payload(current: Optional[Dict[str, Any]], extras: Dict[str, Any]) -> Dict[str, Any]:
    return {**(current or {}), **extras}


class EventStore:
    """Persistence for ``Event`` rows; every call runs in its own session."""

    def __init__(self, session_factory, update_publisher=None):
        self.session_factory = session_factory
        self.update_publisher = update_publisher

    async def create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _row_values(fields)
        async with self.session_factory() as db:
            try:
                event = Event(**values)
                db.add(event)
                await db.commit()
                return serialize_event(event)
            except IntegrityError:
                await db.rollback()
                existing = await self._find_by_urls(db, values)
                if existing is None:
                    raise
                # Same image/audio seen before: refresh that row instead
                logger.info("Event %s already stored for this URL, updating it", existing.id)
                for name, value in values.items():
                    if name == "payload":
                        value = _merge_payload(existing.payload, value)
                    setattr(existing, name, value)
                existing.updated_at = utcnow()
                await db.commit()
                return serialize_event(existing)

    async def _find_by_urls(self, db, values: Dict[str, Any]) -> Optional[Event]:
        conditions = []
        if values.get("image_url"):
            conditions.append(Event.image_url == values["image_url"])
        if values.get("audio_url"):
            conditions.append(Event.audio_url == values["audio_url"])
        if not conditions:
            return None
        result = await db.execute(select(Event).where(or_(*conditions)).limit(1))
        return result.scalars().first()

    async def upsert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _row_values(fields)
        if values.get("image_url"):
            key = "image_url"
        elif values.get("audio_url"):
            key = "audio_url"
        else:
            return await self.create(fields)

        now = utcnow()
        async with self.session_factory() as db:
            dialect = db.bind.dialect.name
            insert = _UPSERT_INSERTS.get(dialect)
            if insert is None:
                raise NotImplementedError(f"upsert is not supported on {dialect}")
            changes = {**values, "updated_at": now}
            if "payload" in values:
                current = await db.scalar(
                    select(Event.payload).where(getattr(Event, key) == values[key])
                )
                changes["payload"] = _merge_payload(current, values["payload"])
            stmt = insert(Event).values(created_at=now, updated_at=now, **values)
            stmt = stmt.on_conflict_do_update(index_elements=[key], set_=changes).returning(Event)
            try:
                result = await db.execute(stmt, execution_options={"populate_existing": True})
                event = result.scalars().one()
                await db.commit()
            except IntegrityError:
                # Conflict on the other URL column
                await db.rollback()
                return await self.create(fields)
            return serialize_event(event)

    async def get_by_id(self, event_id) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            event = await db.get(Event, event_id)
            return serialize_event(event) if event is not None else None

    async def list(self, query: Optional[EventQuery] = None) -> List[Dict[str, Any]]:
        query = query or EventQuery()
        skip, take = resolve_window(query)
        stmt = (
            select(Event)
            .where(*_filters(query))
            .order_by(Event.created_at.desc(), Event.id.desc())
            .offset(skip)
            .limit(take)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [serialize_event(e) for e in result.scalars().all()]

    async def get_total_count(self, query: Optional[EventQuery] = None) -> int:
        query = query or EventQuery()
        stmt = select(func.count()).select_from(Event).where(*_filters(query))
        async with self.session_factory() as db:
            return (await db.execute(stmt)).scalar_one()

    async def update(self, event_id, fields: Dict[str, Any]) -> Dict[str, Any]:
        columns, extras = split_fields(fields)
        async with self.session_factory() as db:
            event = await db.get(Event, event_id)
            if event is None:
                raise EventNotFound(event_id)
            for name, value in columns.items():
                setattr(event, name, value)
            if extras:
                event.payload = _merge_payload(event.payload, extras)
            event.updated_at = utcnow()
            await db.commit()
            updated = serialize_event(event)

        if self.update_publisher is not None:
            try:
                self.update_publisher.schedule(updated)
            except Exception as e:
                logger.warning("Could not schedule update notification: %s", e)
        return updated

    async def remove(self, event_id) -> Dict[str, Any]:
        async with self.session_factory() as db:
            event = await db.get(Event, event_id)
            if event is None:
                raise EventNotFound(event_id)
            removed = serialize_event(event)
            await db.delete(event)
            await db.commit()
            return removed

    async def remove_all(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(delete(Event))
            await db.commit()
            return result.rowcount
