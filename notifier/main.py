# notifier/main.py
import logging
import math
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from notifier.broker import BrokerConnectionManager
from notifier.config import Settings
from notifier.consumer import QueueConsumer
from notifier.database import init_models, make_engine, make_session_factory
from notifier.errors import ApiError, EventNotFound
from notifier.hub import BroadcastHub, StreamSubscriber
from notifier.ingestion import IngestionService
from notifier.producer import EventUpdatePublisher, QueueProducer
from notifier.schemas import EventQuery
from notifier.store import EventStore, resolve_window

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
_INTEGER = re.compile(r"\s*[+-]?\d+\s*", re.ASCII)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # nginx must not buffer the stream
    "Content-Encoding": "none",
    "Access-Control-Allow-Origin": "*",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# --- REQUEST HELPERS ---
def _positive_int(name: str, raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    # Digits only, optionally signed; surrounding blanks are tolerated
    if not _INTEGER.fullmatch(raw):
        raise ApiError(400, f"{name} must be an integer >= 1")
    value = int(raw)
    if value < 1:
        raise ApiError(400, f"{name} must be an integer >= 1")
    return value


def _event_id(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise EventNotFound(raw)


def _list_query(request: Request, default_page_size: Optional[int] = None) -> EventQuery:
    params = request.query_params
    page = _positive_int("page", params.get("page"))
    page_size = _positive_int("pageSize", params.get("pageSize"))
    limit = _positive_int("limit", params.get("limit"))
    # limit is an alias for pageSize
    size = page_size or limit or default_page_size
    if page is None:
        return EventQuery(
            take=size,
            event_type=params.get("event_type") or None,
            search=params.get("search") or None,
        )
    return EventQuery(
        page=page,
        page_size=size,
        event_type=params.get("event_type") or None,
        search=params.get("search") or None,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine=None,
    store: Optional[EventStore] = None,
    hub: Optional[BroadcastHub] = None,
    ingestion: Optional[IngestionService] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    connections = BrokerConnectionManager(settings)

    if store is None:
        engine = engine or make_engine(settings.database_url)
        publisher = None
        if settings.queue_enabled and settings.producer_topic:
            producer = QueueProducer(connections, partitions=settings.topic_partitions)
            publisher = EventUpdatePublisher(producer, settings.producer_topic)
        store = EventStore(make_session_factory(engine), update_publisher=publisher)
    hub = hub or BroadcastHub(heartbeat_interval=settings.sse_heartbeat_seconds)
    if ingestion is None:
        consumer = QueueConsumer(connections) if settings.queue_enabled else None
        ingestion = IngestionService(settings, store, hub, consumer)

    # --- LIFECYCLE (STARTUP) ---
    @asynccontextmanager
    async def lifecycle(app: FastAPI):
        if engine is not None:
            await init_models(engine)
        await ingestion.start()
        yield
        await ingestion.stop()
        if store.update_publisher is not None:
            await store.update_publisher.drain()
        hub.close()
        await connections.close()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="event-notifier", lifespan=lifecycle)
    app.state.settings = settings
    app.state.store = store
    app.state.hub = hub
    app.state.ingestion = ingestion
    app.state.connections = connections

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(EventNotFound)
    async def not_found_handler(request: Request, exc: EventNotFound):
        return JSONResponse(status_code=404, content={"message": "Event not found"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal Server Error"})

    # --- API ENDPOINTS ---

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "connections": hub.count(),
            "queue": ingestion.status(),
        }

    @app.post("/api/webhook")
    async def handle_webhook(payload: Any = Body(...)):
        try:
            saved = await ingestion.ingest_webhook(payload)
        except Exception as e:
            logger.exception("Webhook error")
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Internal Server Error", "error": str(e)},
            )
        return {"success": True, "message": "Webhook processed", "savedEvent": saved}

    @app.get("/api/events")
    async def list_events(request: Request):
        query = _list_query(request)
        return {"events": await store.list(query)}

    @app.get("/api/events/page")
    async def page_events(request: Request):
        query = _list_query(request, default_page_size=DEFAULT_PAGE_SIZE)
        if query.page is None:
            query = query.model_copy(update={"page": 1, "page_size": query.take, "take": None})
        _, page_size = resolve_window(query)
        events = await store.list(query)
        total_count = await store.get_total_count(query)
        return {
            "events": events,
            "page": query.page,
            "totalPages": math.ceil(total_count / page_size),
            "totalCount": total_count,
            "pageSize": page_size,
        }

    @app.post("/api/events/upsert")
    async def upsert_event(payload: Dict[str, Any] = Body(...)):
        return await store.upsert(payload)

    @app.get("/api/events/{event_id}")
    async def get_event(event_id: str):
        event = await store.get_by_id(_event_id(event_id))
        if event is None:
            raise EventNotFound(event_id)
        return event

    @app.post("/api/events", status_code=201)
    async def create_event(payload: Dict[str, Any] = Body(...)):
        return await store.create(payload)

    @app.put("/api/events/{event_id}")
    async def update_event(event_id: str, payload: Dict[str, Any] = Body(...)):
        return await store.update(_event_id(event_id), payload)

    @app.delete("/api/events/{event_id}")
    async def delete_event(event_id: str):
        return await store.remove(_event_id(event_id))

    @app.delete("/api/events")
    async def delete_all_events():
        return {"count": await store.remove_all()}

    # --- PUSH CHANNEL ---

    @app.get("/events")
    async def stream_events():
        return StreamingResponse(
            stream_frames(hub, StreamSubscriber()),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return app


async def stream_frames(hub: BroadcastHub, subscriber: StreamSubscriber):
    """Register ``subscriber`` and yield its frames until it is closed or the client goes away.

    Registration happens on first iteration, so a response that never starts
    streaming leaves nothing behind in the hub.
    """
    hub.subscribe(subscriber)
    try:
        async for frame in subscriber:
            yield frame
    finally:
        hub.unsubscribe(subscriber)


def run():
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
