from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from app.services.billing.dates import utcnow

logger = logging.getLogger(__name__)

RELAY_CHANNEL = "notifications:events"
DEFAULT_CHANNEL_QUEUE_SIZE = 256

EVENT_SUBSCRIPTION_CREATED = "subscription_created"
EVENT_SUBSCRIPTION_ACTIVATED = "subscription_activated"
EVENT_SUBSCRIPTION_CANCELLED = "subscription_cancelled"
EVENT_SUBSCRIPTION_CHARGED = "subscription_charged"
EVENT_SUBSCRIPTION_RESUMED = "subscription_resumed"
EVENT_SUBSCRIPTION_PENDING = "subscription_pending"
EVENT_SUBSCRIPTION_HALTED = "subscription_halted"
EVENT_SUBSCRIPTION_EXPIRED = "subscription_expired"
EVENT_PAYMENT_SUCCESS = "payment_success"
EVENT_PAYMENT_FAILED = "payment_failed"


class ChannelClosedError(Exception):
    pass


class SSEChannel:
    """
    One open streaming connection. Messages are queued here by the hub and
    drained by the response generator of that connection.
    """

    def __init__(self, max_queue_size: int = DEFAULT_CHANNEL_QUEUE_SIZE):
        self.id = uuid.uuid4().hex
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)

    def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ChannelClosedError(self.id)
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            # A reader this far behind is gone or stuck.
            self.close()
            raise ChannelClosedError(self.id)

    async def receive(self, timeout: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Next queued message, or None when nothing arrives within timeout."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self.closed = True


class EventBus:
    """Process-local publish/subscribe for in-process listeners of billing events."""

    def __init__(self):
        self._subscribers: dict[str, list[Callable[[dict[str, Any]], Any]]] = defaultdict(list)

    def subscribe(self, name: str, handler: Callable[[dict[str, Any]], Any]) -> None:
        self._subscribers[name].append(handler)

    def emit(self, name: str, event: dict[str, Any]) -> None:
        for handler in list(self._subscribers.get(name, ())):
            try:
                handler(event)
            except Exception:
                logger.exception("event_bus_handler_failed event=%s", name)


def build_event(
    event_type: str,
    user_id: str,
    data: Any,
    subscription_id: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "type": event_type,
        "userId": str(user_id),
        "data": data,
        "timestamp": utcnow().isoformat(),
    }
    if subscription_id:
        event["subscriptionId"] = subscription_id
    if payment_id:
        event["paymentId"] = payment_id
    return event


def format_sse(message: dict[str, Any]) -> str:
    return f"data: {json.dumps(message, default=str)}\n\n"


def connection_established_message(user_id: str) -> dict[str, Any]:
    return {
        "type": "connection_established",
        "userId": str(user_id),
        "timestamp": utcnow().isoformat(),
        "message": "Connected to subscription events",
    }


def heartbeat_message() -> dict[str, Any]:
    return {
        "type": "heartbeat",
        "timestamp": utcnow().isoformat(),
    }


class NotificationHub:
    """
    Per-process registry of open streams keyed by user id.

    Not shared across server instances; enable the Redis relay to deliver
    events raised on one instance to streams held by another.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus or EventBus()
        self.relay: Optional["RedisNotificationRelay"] = None
        self._connections: dict[str, list[SSEChannel]] = {}

    # ---------------- REGISTRY ----------------
    def add_connection(self, user_id: str, channel: SSEChannel) -> None:
        self._connections.setdefault(str(user_id), []).append(channel)
        logger.info("sse_connection_added user_id=%s channel=%s", user_id, channel.id)

    def remove_connection(self, user_id: str, channel: Optional[SSEChannel] = None) -> None:
        key = str(user_id)
        channels = self._connections.get(key)
        if not channels:
            return

        if channel is None:
            for registered in channels:
                registered.close()
            del self._connections[key]
            logger.info("sse_connections_removed user_id=%s", user_id)
            return

        if channel in channels:
            channels.remove(channel)
            channel.close()
            logger.info("sse_connection_removed user_id=%s channel=%s", user_id, channel.id)
        if not channels:
            del self._connections[key]

    def connections_for(self, user_id: str) -> list[SSEChannel]:
        return list(self._connections.get(str(user_id), ()))

    def active_connections_count(self) -> int:
        return sum(len(channels) for channels in self._connections.values())

    def active_users_count(self) -> int:
        return len(self._connections)

    # ---------------- DELIVERY ----------------
    def send_to_user(self, user_id: str, event: dict[str, Any]) -> int:
        """Write to every channel of the user. Closed channels are pruned, never raised."""
        delivered = 0
        dead: list[SSEChannel] = []

        for channel in self.connections_for(user_id):
            try:
                channel.send(event)
                delivered += 1
            except ChannelClosedError:
                dead.append(channel)

        for channel in dead:
            logger.info("sse_dead_channel_pruned user_id=%s channel=%s", user_id, channel.id)
            self.remove_connection(user_id, channel)

        if delivered:
            logger.info(
                "sse_event_sent user_id=%s type=%s channels=%s",
                user_id,
                event.get("type"),
                delivered,
            )
        return delivered

    def broadcast(self, event: dict[str, Any]) -> int:
        logger.info("sse_broadcast type=%s users=%s", event.get("type"), self.active_users_count())
        return sum(self.send_to_user(user_id, event) for user_id in list(self._connections))

    def heartbeat(self) -> int:
        return self.broadcast(heartbeat_message())

    # ---------------- TYPED EMITTERS ----------------
    def _emit(
        self,
        event_type: str,
        bus_name: str,
        user_id: str,
        data: Any,
        subscription_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> dict[str, Any]:
        event = build_event(
            event_type,
            user_id,
            data,
            subscription_id=subscription_id,
            payment_id=payment_id,
        )
        self.bus.emit(bus_name, event)

        if self.relay is not None:
            self.relay.publish(event)
        else:
            self.send_to_user(user_id, event)
        return event

    def emit_subscription_created(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_CREATED, "subscription.created", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_subscription_activated(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_ACTIVATED, "subscription.activated", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_subscription_cancelled(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_CANCELLED, "subscription.cancelled", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_subscription_charged(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_CHARGED, "subscription.charged", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_subscription_resumed(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_RESUMED, "subscription.resumed", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_subscription_pending(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_PENDING, "subscription.pending", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_subscription_halted(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_HALTED, "subscription.halted", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_subscription_expired(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_SUBSCRIPTION_EXPIRED, "subscription.expired", user_id, data,
            subscription_id=data.get("subscription_id"),
        )

    def emit_payment_success(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_PAYMENT_SUCCESS, "payment.success", user_id, data,
            subscription_id=data.get("subscription_id"),
            payment_id=data.get("payment_id"),
        )

    def emit_payment_failed(self, user_id: str, data: dict[str, Any]) -> dict[str, Any]:
        return self._emit(
            EVENT_PAYMENT_FAILED, "payment.failed", user_id, data,
            subscription_id=data.get("subscription_id"),
            payment_id=data.get("payment_id"),
        )


class RedisNotificationRelay:
    """
    Cross-instance delivery: emitted events go to a Redis channel and every
    instance's listener hands them to its local hub.
    """

    def __init__(self, hub: NotificationHub, redis: Any, channel: str = RELAY_CHANNEL):
        self.hub = hub
        self.redis = redis
        self.channel = channel
        self._tasks: set[asyncio.Task] = set()

    def attach(self) -> None:
        self.hub.relay = self

    def publish(self, event: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.hub.send_to_user(event["userId"], event)
            return

        task = loop.create_task(self._publish(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish(self, event: dict[str, Any]) -> None:
        try:
            await self.redis.publish(self.channel, json.dumps(event, default=str))
        except RedisError as exc:
            logger.error("notification_relay_publish_failed type=%s error=%s", event.get("type"), exc)
            # Still reach streams held by this instance.
            self.hub.send_to_user(event["userId"], event)

    def deliver(self, raw: str) -> int:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("notification_relay_bad_message")
            return 0
        user_id = event.get("userId") if isinstance(event, dict) else None
        if not user_id:
            return 0
        return self.hub.send_to_user(user_id, event)

    async def listen(self) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info("notification_relay_listening channel=%s", self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.deliver(message.get("data"))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()


async def event_stream(
    hub: NotificationHub,
    user_id: str,
    channel: SSEChannel,
    heartbeat_seconds: float = 30.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """
    Body of one streaming response. The channel must already be registered;
    it is deregistered when the client goes away or the generator is closed.
    """
    try:
        yield format_sse(connection_established_message(user_id))
        while not channel.closed:
            message = await channel.receive(timeout=heartbeat_seconds)
            if is_disconnected is not None and await is_disconnected():
                break
            yield format_sse(message if message is not None else heartbeat_message())
    finally:
        hub.remove_connection(user_id, channel)
        logger.info("sse_stream_closed user_id=%s channel=%s", user_id, channel.id)


notification_hub = NotificationHub()
