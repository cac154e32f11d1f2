"""Realtime status events: sources and dispatch.

Consumers depend on :class:`EventSource`, an async stream of
:class:`RealtimeMessage` envelopes with an observable connection status.
:class:`ReverbEventSource` speaks the Pusher protocol to a Laravel Reverb
server; :class:`QueueEventSource` is fed in-process and stands in when no
realtime server is configured.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Iterable, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from .models import ConnectionStatus, RealtimeMessage
from .provisioning import ProvisioningTracker
from .registry import ServiceRegistry

logger = logging.getLogger(__name__)

PROVISIONING_CHANNEL = "provisioning"
SERVICE_STATUS_EVENT = "service.status.changed"
PROVISION_STATUS_EVENT = "project.provision.status"
DELETION_STATUS_EVENT = "project.deletion.status"

CONNECTION_WARNING = "Realtime connection unavailable, refresh manually to see changes"

StatusListener = Callable[[ConnectionStatus], None]


def environment_channel(env_id: int) -> str:
    """Public channel carrying service events for one environment."""
    return f"environment.{env_id}"


def connection_warning(status: ConnectionStatus) -> Optional[str]:
    """Advisory text to show for a connection status, if any."""
    if status == ConnectionStatus.FAILED:
        return CONNECTION_WARNING
    return None


class EventSource(ABC):
    """Something that delivers status-change messages."""

    def __init__(self):
        self.status = ConnectionStatus.DISCONNECTED
        self._listeners: List[StatusListener] = []

    def on_status_change(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        logger.info(f"Realtime connection {status.value}")
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Connection status listener failed: {e}", exc_info=True)

    @abstractmethod
    def messages(self) -> AsyncIterator[RealtimeMessage]:
        """Yield messages until the source is closed."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering messages."""


class QueueEventSource(EventSource):
    """In-memory source. Messages are delivered in publish order."""

    def __init__(self, connected: bool = True):
        super().__init__()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._connected = connected
        if not connected:
            self.status = ConnectionStatus.UNAVAILABLE

    def publish(self, message: RealtimeMessage) -> None:
        self._queue.put_nowait(message)

    def emit(self, channel: str, event: str, **data) -> None:
        self.publish(RealtimeMessage(channel=channel, event=event, data=data))

    async def messages(self) -> AsyncIterator[RealtimeMessage]:
        if self._connected:
            self._set_status(ConnectionStatus.CONNECTED)
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    async def close(self) -> None:
        self._queue.put_nowait(None)
        if self._connected:
            self._set_status(ConnectionStatus.DISCONNECTED)


def decode_frame(raw) -> Optional[dict]:
    """Parse a Pusher frame, decoding the JSON-encoded ``data`` field."""
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(frame, dict):
        return None

    data = frame.get("data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            data = {}
    frame["data"] = data if isinstance(data, dict) else {}
    return frame


class ReverbEventSource(EventSource):
    """Pusher-protocol client for a Reverb server.

    Reconnects with exponential backoff. Every successful (re)connection is
    reported as ``connected`` so consumers can reconcile anything missed.
    """

    def __init__(
        self,
        url: str,
        channels: Iterable[str],
        reconnect_max_delay: float = 30.0,
    ):
        super().__init__()
        self.url = url
        self.channels = list(channels)
        self.reconnect_max_delay = reconnect_max_delay
        self._closed = False
        self._ws = None

    async def messages(self) -> AsyncIterator[RealtimeMessage]:
        delay = 1.0
        while not self._closed:
            self._set_status(ConnectionStatus.CONNECTING)
            fatal = False
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    async for raw in ws:
                        frame = decode_frame(raw)
                        if frame is None:
                            logger.warning(f"Ignoring undecodable frame: {raw!r}")
                            continue

                        event = frame.get("event", "")
                        if event == "pusher:connection_established":
                            await self._subscribe(ws)
                            self._set_status(ConnectionStatus.CONNECTED)
                            delay = 1.0
                        elif event == "pusher:ping":
                            await ws.send(json.dumps({"event": "pusher:pong", "data": {}}))
                        elif event == "pusher:error":
                            code = frame["data"].get("code")
                            logger.error(f"Reverb error {code}: {frame['data'].get('message')}")
                            # 4000-4099: do not reconnect (bad app key, over quota, ...)
                            if isinstance(code, int) and 4000 <= code < 4100:
                                fatal = True
                                break
                        elif event.startswith("pusher"):
                            logger.debug(f"Protocol event {event}")
                        else:
                            yield RealtimeMessage(
                                channel=frame.get("channel") or "",
                                event=event,
                                data=frame["data"],
                            )
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"Realtime connection to {self.url} failed: {e}")
                self._set_status(ConnectionStatus.FAILED)
            else:
                if not self._closed:
                    self._set_status(ConnectionStatus.FAILED if fatal else ConnectionStatus.DISCONNECTED)
            finally:
                self._ws = None

            if self._closed or fatal:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnect_max_delay)

    async def _subscribe(self, ws) -> None:
        for channel in self.channels:
            await ws.send(json.dumps({"event": "pusher:subscribe", "data": {"channel": channel}}))

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
        self._set_status(ConnectionStatus.DISCONNECTED)


class EventDispatcher:
    """Routes realtime envelopes to the registry and the tracker.

    Never raises on malformed or unexpected payloads.
    """

    def __init__(self, registry: ServiceRegistry, tracker: ProvisioningTracker):
        self.registry = registry
        self.tracker = tracker

    def dispatch(self, message: RealtimeMessage) -> bool:
        """Apply one message. Returns True if it was recognised and applied."""
        try:
            if message.event == SERVICE_STATUS_EVENT:
                return self._service_status(message)
            if message.event in (PROVISION_STATUS_EVENT, DELETION_STATUS_EVENT):
                return self.tracker.handle_event(message.data)
        except Exception as e:
            logger.error(f"Failed to apply {message.event} on {message.channel}: {e}", exc_info=True)
            return False

        logger.debug(f"Ignoring event {message.event} on {message.channel}")
        return False

    def _service_status(self, message: RealtimeMessage) -> bool:
        active = self.registry.active_environment_id
        if active is not None and message.channel not in ("", environment_channel(active)):
            logger.debug(f"Ignoring service event for inactive channel {message.channel}")
            return False

        data = message.data
        service, status = data.get("service"), data.get("status")
        if not isinstance(service, str) or not isinstance(status, str):
            logger.warning(f"Ignoring malformed service event: {data!r}")
            return False

        job_id = data.get("job_id")
        self.registry.handle_service_status_changed(
            str(job_id) if job_id is not None else None,
            service,
            status,
            data.get("error") or None,
        )
        return True


def create_event_source(settings, env_id: int) -> EventSource:
    """Realtime source for the configured Reverb server, or a poll-only stand-in."""
    url = settings.reverb_url
    if url is None:
        logger.info("Realtime updates not configured, falling back to polling")
        return QueueEventSource(connected=False)
    return ReverbEventSource(
        url,
        channels=[PROVISIONING_CHANNEL, environment_channel(env_id)],
        reconnect_max_delay=settings.reconnect_max_delay,
    )
