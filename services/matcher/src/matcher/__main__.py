from __future__ import annotations

import asyncio
import logging

from common.queue import BrokerConnection, run_until_signalled
from common.store import DEFAULT_DB_PATH, ProfileStore
from common.utils import env_flag, env_int, env_str

from matcher.mailer import build_smtp_sender
from matcher.main import (
    DEFAULT_BROKER_URL,
    DEFAULT_OPPORTUNITY_QUEUE,
    build_consumer,
    build_dispatcher,
)


async def serve() -> None:
    store = ProfileStore(env_str("CATCHMENT_DB_PATH", DEFAULT_DB_PATH))
    store.connect()
    try:
        async with BrokerConnection(
            env_str("RABBITMQ_URL", DEFAULT_BROKER_URL),
            prefetch_count=env_int("CONSUMER_PREFETCH", 1),
        ) as connection:
            consumer = build_consumer(
                connection,
                build_dispatcher(store, build_smtp_sender()),
                queue_name=env_str("OPPORTUNITY_QUEUE", DEFAULT_OPPORTUNITY_QUEUE),
                requeue_on_error=env_flag("CONSUMER_REQUEUE_ON_ERROR", False),
            )
            await run_until_signalled(consumer)
    finally:
        store.close()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    asyncio.run(serve())


if __name__ == "__main__":
    main()
