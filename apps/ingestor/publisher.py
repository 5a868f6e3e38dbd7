"""
Event Publisher for the Ingestor

Publishes a job_completed event to Redis Pub/Sub after each batch so other
services can refresh dashboards or notify agents.

Usage:
    from apps.ingestor.publisher import publish_job_event

    await publish_job_event(agency, summary)
"""

import logging
from typing import Optional

from utils.config import settings
from utils.mq import RedisPublisher
from utils.schemas import AgencyContext, JobEvent, JobSummary

logger = logging.getLogger(__name__)


async def publish_job_event(
    agency: AgencyContext,
    summary: JobSummary,
    publisher: Optional[RedisPublisher] = None,
    channel: Optional[str] = None,
) -> None:
    """
    Publish a batch summary to the jobs channel.

    Args:
        agency: Agency the batch ran for
        summary: Summary returned by the orchestrator
        publisher: Shared publisher; a short-lived one is created and closed if None
        channel: Redis channel, defaults to settings.REDIS_CHANNEL_JOBS

    Raises:
        redis.RedisError: If publishing fails
    """
    channel = channel or settings.REDIS_CHANNEL_JOBS
    owned = publisher is None
    publisher = publisher or RedisPublisher()

    try:
        event = JobEvent(agency_id=agency.agency_id, summary=summary)
        await publisher.publish(channel, event.model_dump(mode="json"))

        logger.info(
            "Published job event",
            extra={
                "channel": channel,
                "agency_id": agency.agency_id,
                "message_type": event.type,
                "tickets_created": summary.tickets_created,
            },
        )

    except Exception as e:
        logger.error(
            "Failed to publish event",
            extra={"channel": channel, "agency_id": agency.agency_id, "error": str(e)},
        )
        raise

    finally:
        if owned:
            await publisher.close()
