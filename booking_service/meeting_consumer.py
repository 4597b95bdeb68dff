import datetime
import json
import logging

from aiokafka import AIOKafkaConsumer
from sqlalchemy.orm import Session

from .database import SessionLocal
from .config import settings
from .meetings import MeetingProviderError, ZohoMeetings
from . import crud

# Set up logger
logger = logging.getLogger("meeting_consumer")


async def handle_booking_event(message: dict, db: Session, meetings: ZohoMeetings) -> bool:
    """
    Provisions a meeting for a confirmed booking that has no link yet.
    Returns True if a link was stored.
    """
    if message.get("event") != "booking.confirmed":
        return False

    booking_id = message.get("booking_id")
    if not booking_id:
        logger.warning(f"Skipping malformed message: {message}")
        return False

    booking = crud.get_booking(db, booking_id)
    if booking is None:
        logger.warning(f"Booking {booking_id} from event does not exist, skipping.")
        return False
    if booking.meet_link:
        # Redelivered event
        logger.info(f"Booking {booking_id} already has a meeting link.")
        return False

    meeting = await meetings.create_meeting(
        topic=f"Consultation with {booking.customer_name}",
        start_time=booking.slot.replace(tzinfo=datetime.timezone.utc),
        duration_minutes=settings.MEETING_DURATION_MINUTES,
    )
    stored = crud.set_meet_link(db, booking_id, meeting.join_url)
    if stored:
        logger.info(f"Attached meeting {meeting.meeting_id} to booking {booking_id}")
    return stored


async def consume_booking_events():
    """
    Consumes booking lifecycle events and attaches meeting links to confirmed bookings.
    """
    consumer = AIOKafkaConsumer(
        settings.KAFKA_BOOKING_TOPIC,
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        group_id=settings.KAFKA_CONSUMER_GROUP,
        auto_offset_reset="earliest"
    )
    meetings = ZohoMeetings.from_settings(settings)

    logger.info("Starting Kafka consumer...")
    await consumer.start()
    logger.info("Kafka consumer started. Listening for booking events...")

    try:
        async for msg in consumer:
            try:
                message = json.loads(msg.value.decode("utf-8"))
            except (ValueError, AttributeError) as e:
                logger.warning(f"Skipping undecodable message at offset {msg.offset}: {e}")
                continue

            db: Session = SessionLocal()
            try:
                await handle_booking_event(message, db, meetings)
            except MeetingProviderError as e:
                logger.error(f"Could not provision meeting for {message.get('booking_id')}: {e}")
            except Exception as e:
                logger.error(f"Error processing message {message}: {e}")
                db.rollback()
            finally:
                db.close()
    finally:
        logger.info("Stopping Kafka consumer...")
        await consumer.stop()
        await meetings.aclose()
        logger.info("Kafka consumer stopped.")
