from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from common.utils import log_event, now_utc_iso

LOGGER = logging.getLogger("catchment.queue")

T = TypeVar("T")

Connect = Callable[[str], Awaitable[AbstractRobustConnection]]


class MalformedMessageError(ValueError):
    """Raised by decoders for payloads that can never be processed."""


class ConsumerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    PROCESSING = "processing"


@dataclass
class ConsumerStats:
    received: int = 0
    acked: int = 0
    rejected: int = 0
    malformed: int = 0
    ignored: int = 0
    last_message_at: str | None = None


class BrokerConnection:
    """Owned handle to the broker.

    Reconnects are delegated to ``aio_pika.connect_robust``; this class only
    scopes the connection's lifetime.
    """

    def __init__(
        self,
        url: str,
        *,
        prefetch_count: int = 1,
        connect: Connect | None = None,
    ) -> None:
        self.url = url
        self.prefetch_count = prefetch_count
        self._connect = connect or aio_pika.connect_robust
        self._connection: AbstractRobustConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    async def open(self) -> None:
        if self._connection is not None:
            return
        self._connection = await self._connect(self.url)
        log_event(LOGGER, logging.INFO, "broker_connected", prefetch_count=self.prefetch_count)

    async def channel(self) -> AbstractChannel:
        if self._connection is None:
            raise RuntimeError("Broker connection is not open")
        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=self.prefetch_count)
        return channel

    async def close(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        await connection.close()
        log_event(LOGGER, logging.INFO, "broker_closed")

    async def __aenter__(self) -> BrokerConnection:
        await self.open()
        return self

    async def __aexit__(self, *_: object) -> bool:
        await self.close()
        return False


class QueueConsumer(Generic[T]):
    """Serial consumer over one durable queue with manual ack/reject.

    ``decode`` turns a raw body into a payload, returning ``None`` for messages
    that are valid but not addressed to this consumer (acked, not handled), or
    raising ``MalformedMessageError`` (rejected without requeue). Any exception
    from ``handle`` rejects the message, requeueing only when
    ``requeue_on_error`` is set.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        queue_name: str,
        *,
        decode: Callable[[bytes], T | None],
        handle: Callable[[T], Awaitable[Any]],
        requeue_on_error: bool = False,
    ) -> None:
        self.connection = connection
        self.queue_name = queue_name
        self.decode = decode
        self.handle = handle
        self.requeue_on_error = requeue_on_error
        self.state = ConsumerState.DISCONNECTED
        self.stats = ConsumerStats()
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None

    async def start(self) -> AbstractQueue:
        if self._queue is not None:
            return self._queue
        self.state = ConsumerState.CONNECTING
        try:
            await self.connection.open()
            self._channel = await self.connection.channel()
            self._queue = await self._channel.declare_queue(self.queue_name, durable=True)
        except Exception:
            self.state = ConsumerState.DISCONNECTED
            raise
        self.state = ConsumerState.SUBSCRIBED
        log_event(LOGGER, logging.INFO, "consumer_started", queue=self.queue_name)
        return self._queue

    async def run(self) -> None:
        queue = await self.start()
        try:
            async with queue.iterator() as deliveries:
                async for message in deliveries:
                    await self.process(message)
        finally:
            await self.stop()

    async def process(self, message: AbstractIncomingMessage) -> bool:
        """Handle one delivery; returns True when it was acknowledged."""
        previous_state = self.state
        self.state = ConsumerState.PROCESSING
        self.stats.received += 1
        self.stats.last_message_at = now_utc_iso()
        try:
            try:
                payload = self.decode(message.body)
            except MalformedMessageError as exc:
                self.stats.malformed += 1
                await self._reject(message, reason="malformed", requeue=False, error=str(exc))
                return False

            if payload is None:
                self.stats.ignored += 1
                await self._ack(message, ignored=True)
                return True

            try:
                await self.handle(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_event(
                    LOGGER,
                    logging.ERROR,
                    "handler_failed",
                    exc_info=True,
                    queue=self.queue_name,
                    message_id=message.message_id,
                )
                await self._reject(
                    message,
                    reason="handler_error",
                    requeue=self.requeue_on_error,
                    error=str(exc),
                )
                return False

            await self._ack(message)
            return True
        finally:
            if self.state is ConsumerState.PROCESSING:
                self.state = previous_state

    async def stop(self) -> None:
        channel, self._channel = self._channel, None
        self._queue = None
        if channel is not None and not channel.is_closed:
            await channel.close()
        if self.state is not ConsumerState.DISCONNECTED:
            self.state = ConsumerState.DISCONNECTED
            log_event(LOGGER, logging.INFO, "consumer_stopped", queue=self.queue_name)

    async def _ack(self, message: AbstractIncomingMessage, *, ignored: bool = False) -> None:
        await message.ack()
        self.stats.acked += 1
        log_event(
            LOGGER,
            logging.INFO,
            "message_acked",
            queue=self.queue_name,
            message_id=message.message_id,
            ignored=ignored,
        )

    async def _reject(
        self,
        message: AbstractIncomingMessage,
        *,
        reason: str,
        requeue: bool,
        error: str,
    ) -> None:
        await message.reject(requeue=requeue)
        self.stats.rejected += 1
        log_event(
            LOGGER,
            logging.WARNING,
            "message_rejected",
            queue=self.queue_name,
            message_id=message.message_id,
            reason=reason,
            requeue=requeue,
            error=error,
        )


async def run_until_signalled(consumer: QueueConsumer[Any]) -> None:
    """Run ``consumer`` until SIGINT/SIGTERM, re-raising if it dies on its own."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    consumer_task = asyncio.create_task(consumer.run())
    stop_task = asyncio.create_task(stop.wait())
    await asyncio.wait({consumer_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    stop_task.cancel()
    consumer_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await stop_task
    with contextlib.suppress(asyncio.CancelledError):
        await consumer_task
