# notifier/client.py
"""
Push-channel listener with de-duplication.

Events can reach a listener twice: once from the history preload and once
live, or again after a reconnect. Each event is identified by
``timestamp|audio_url|image_url`` and handled only the first time that key
is seen. The seen-set survives reconnects.
"""
import asyncio
import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


def event_key(event: Dict[str, Any]) -> str:
    nested = event.get("data") if isinstance(event.get("data"), dict) else {}
    timestamp = event.get("timestamp")
    ts = "" if timestamp is None else str(timestamp)
    audio = event.get("audio_url") or nested.get("audio_url") or ""
    image = event.get("image_url") or nested.get("image_url") or ""
    return f"{ts}|{audio}|{image}"


class SSEParser:
    """Incremental parser for ``text/event-stream`` lines."""

    def __init__(self):
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[str]:
        """Feed one line (without its newline); returns a payload when a frame ends."""
        line = line.rstrip("\r")
        if not line:
            if not self._data:
                return None
            payload, self._data = "\n".join(self._data), []
            return payload
        if line.startswith(":"):
            # Comment frame, e.g. the keep-alive heartbeat
            return None
        name, _, value = line.partition(":")
        if name == "data":
            self._data.append(value[1:] if value.startswith(" ") else value)
        return None


class EventStreamClient:
    def __init__(
        self,
        base_url: str,
        on_event: Callable[[Dict[str, Any]], Any],
        reconnect_ms: int = 3000,
        preload_limit: int = 10,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.on_event = on_event
        self.reconnect_ms = reconnect_ms
        self.preload_limit = preload_limit
        self.http = http
        self.seen: set = set()
        self.total_events = 0
        self.connected = False
        self._stopped = False

    def accept(self, event: Any) -> bool:
        """Return True when ``event`` is new and should be rendered/played."""
        if not isinstance(event, dict):
            return False
        if event.get("type") == "connection":
            return False
        key = event_key(event)
        if key in self.seen:
            return False
        self.seen.add(key)
        self.total_events += 1
        return True

    def handle_payload(self, payload: str) -> int:
        """Dispatch one ``data`` payload; returns the number of new events."""
        try:
            data = json.loads(payload)
        except ValueError:
            logger.error("Error parsing SSE data: %r", payload[:200])
            return 0
        events = data if isinstance(data, list) else [data]
        handled = 0
        for event in events:
            if self.accept(event):
                self.on_event(event)
                handled += 1
        return handled

    async def preload(self, http: httpx.AsyncClient) -> int:
        """Mark the most recent stored events as seen without handling them."""
        try:
            resp = await http.get(f"{self.base_url}/api/events", params={"limit": self.preload_limit})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to preload events: %s", e)
            return 0
        events = resp.json().get("events") or []
        for event in reversed(events):
            self.seen.add(event_key(event))
        return len(events)

    async def _listen(self, http: httpx.AsyncClient) -> None:
        parser = SSEParser()
        async with http.stream("GET", f"{self.base_url}/events", timeout=None) as resp:
            resp.raise_for_status()
            self.connected = True
            logger.info("SSE connection opened")
            async for line in resp.aiter_lines():
                payload = parser.feed(line)
                if payload is not None:
                    self.handle_payload(payload)
                if self._stopped:
                    return

    async def run(self) -> None:
        http = self.http or httpx.AsyncClient()
        try:
            await self.preload(http)
            while not self._stopped:
                try:
                    await self._listen(http)
                except httpx.HTTPError as e:
                    logger.error("SSE connection error: %s", e)
                finally:
                    self.connected = False
                if self._stopped:
                    break
                logger.info("Reconnecting in %d ms", self.reconnect_ms)
                await asyncio.sleep(self.reconnect_ms / 1000)
        finally:
            if self.http is None:
                await http.aclose()

    def stop(self) -> None:
        self._stopped = True


def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(),
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")
    base_url = os.getenv("NOTIFIER_URL", "http://localhost:8080")
    reconnect_ms = int(os.getenv("SSE_RECONNECT_MS", "3000"))

    def show(event):
        print(f"[EVENT] {event.get('event_type') or 'event'} "
              f"image={event.get('image_url')} audio={event.get('audio_url')}")

    client = EventStreamClient(base_url, show, reconnect_ms=reconnect_ms)
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        client.stop()


if __name__ == "__main__":
    main()
