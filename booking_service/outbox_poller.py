import asyncio
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from sqlalchemy.orm import Session
from sqlalchemy.sql import select

from .database import SessionLocal
from .models import OutboxEvent
from .config import settings

logger = logging.getLogger("outbox_poller")

BATCH_SIZE = 100


async def start_producer(retry_delay: int = 5, max_retries: int = 5) -> Optional[AIOKafkaProducer]:
    """
    Starts a Kafka producer, retrying while the broker is still coming up.
    Returns None if the broker stays unreachable.
    """
    for attempt in range(1, max_retries + 1):
        producer = AIOKafkaProducer(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
        try:
            await producer.start()
            logger.info(f"Outbox poller connected to Kafka on attempt {attempt}.")
            return producer
        except KafkaConnectionError as e:
            logger.warning(f"Kafka connection attempt {attempt}/{max_retries} failed: {e}.")
            await producer.stop()
            if attempt < max_retries:
                await asyncio.sleep(retry_delay)
    logger.error("Outbox poller failed to connect to Kafka after multiple retries.")
    return None


async def relay_pending_events(db: Session, producer, batch_size: int = BATCH_SIZE) -> int:
    """
    Sends one batch of PENDING outbox events, oldest first, deleting each one
    that Kafka acknowledged. Unsent events stay for the next round.
    """
    stmt = select(OutboxEvent).where(
        OutboxEvent.status == "PENDING"
    ).order_by(OutboxEvent.id).limit(batch_size).with_for_update(skip_locked=True)

    pending_events = db.execute(stmt).scalars().all()
    if not pending_events:
        return 0

    logger.info(f"Found {len(pending_events)} pending events in outbox.")
    sent = 0
    for event in pending_events:
        try:
            await producer.send_and_wait(
                topic=event.topic,
                value=event.payload.encode("utf-8")
            )
        except Exception as e:
            logger.error(f"Failed to send outbox event {event.id} to Kafka: {e}")
            # Keep ordering per topic: stop at the first failure
            break
        db.delete(event)
        sent += 1

    if sent:
        db.commit()
        logger.info(f"Successfully relayed {sent} events.")
    else:
        db.rollback()
    return sent


async def run_outbox_poller(poll_interval: int = 5, retry_delay: int = 5, max_retries: int = 5):
    """
    Continuously relays booking events from the outbox table to Kafka.
    """
    logger.info("Starting outbox poller...")
    producer = await start_producer(retry_delay=retry_delay, max_retries=max_retries)
    if producer is None:
        return

    try:
        while True:
            db: Session = SessionLocal()
            try:
                await relay_pending_events(db, producer)
            except Exception as e:
                logger.error(f"Error in poller loop: {e}")
                db.rollback()
            finally:
                db.close()

            await asyncio.sleep(poll_interval)

    except asyncio.CancelledError:
        logger.info("Outbox poller task cancelled.")
    finally:
        logger.info("Stopping Kafka producer...")
        await producer.stop()
        logger.info("Outbox poller shut down.")
