"""
Redis Pub/Sub for real-time job status.

The status publisher is the ephemeral half of progress reporting: a failed
publish is logged and returned as False, it never raises and never affects the
durable job store write.

Channels:
- reelqueue:progress:{job_id} - Per-job progress and completion
- reelqueue:user:{owner_id} - Everything for one owner (upload notifications)
- reelqueue:progress:all - All progress (for dashboards)
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from api.models import StatusEvent
from api.redis_client import get_redis
from config import JOB_BACKEND, REDIS_KEY_PREFIX

logger = logging.getLogger(__name__)


def channel_name(channel_type: str, entity_id: Optional[str] = None) -> str:
    """
    Generate consistent channel name.

    Args:
        channel_type: Type of channel (e.g., "progress", "user")
        entity_id: Optional entity identifier

    Returns:
        Full channel name (e.g., "reelqueue:progress:abc123")
    """
    if entity_id:
        return f"{REDIS_KEY_PREFIX}:{channel_type}:{entity_id}"
    return f"{REDIS_KEY_PREFIX}:{channel_type}"


def event_channels(event: StatusEvent) -> List[str]:
    channels = [channel_name("progress", event.job_id)]
    if event.owner_id:
        channels.append(channel_name("user", event.owner_id))
    channels.append(channel_name("progress", "all"))
    return channels


class StatusPublisher:
    """Interface for pushing status events to listeners."""

    async def publish(self, event: StatusEvent) -> bool:
        raise NotImplementedError


class LoggingStatusPublisher(StatusPublisher):
    """Publisher for the memory backend: events only go to the log."""

    async def publish(self, event: StatusEvent) -> bool:
        logger.info(
            f"Job {event.job_id} [{event.status.value}] {event.progress_percent}% {event.message}"
        )
        return True


class RedisStatusPublisher(StatusPublisher):
    """Publish status events to Redis Pub/Sub channels."""

    async def publish(self, event: StatusEvent) -> bool:
        """
        Publish one status event to the job, owner and global channels.

        Returns:
            True if published successfully
        """
        try:
            redis = await get_redis()
        except Exception as e:
            logger.warning(f"Failed to publish status for job {event.job_id}: {e}")
            return False
        if not redis:
            return False

        try:
            payload = json.dumps(event.to_message())
            for channel in event_channels(event):
                await redis.publish(channel, payload)
            return True
        except Exception as e:
            logger.warning(f"Failed to publish status for job {event.job_id}: {e}")
            return False


def create_status_publisher(backend: str = JOB_BACKEND) -> StatusPublisher:
    if backend == "memory":
        return LoggingStatusPublisher()
    return RedisStatusPublisher()


class Subscriber:
    """Subscribe to Redis Pub/Sub channels (used by the CLI watch command)."""

    def __init__(self) -> None:
        self._pubsub = None
        self._subscribed_channels: Set[str] = set()

    async def subscribe(self, *channels: str) -> bool:
        """
        Subscribe to one or more channels.

        Returns:
            True if subscribed successfully
        """
        redis = await get_redis()
        if not redis:
            return False

        try:
            if not self._pubsub:
                self._pubsub = redis.pubsub()

            await self._pubsub.subscribe(*channels)
            self._subscribed_channels.update(channels)
            logger.debug(f"Subscribed to channels: {channels}")
            return True
        except Exception as e:
            logger.warning(f"Failed to subscribe to channels: {e}")
            return False

    async def listen(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Async generator yielding decoded status messages.

        Raises:
            Exception: On connection errors (caller should handle reconnection)
        """
        if not self._pubsub:
            return

        async for message in self._pubsub.listen():
            msg_type = message.get("type", "")

            # Skip subscription confirmations
            if msg_type in ("subscribe", "unsubscribe"):
                continue

            if msg_type == "message":
                try:
                    data = json.loads(message.get("data", "{}"))
                except json.JSONDecodeError:
                    logger.debug(f"Invalid JSON in pub/sub message: {message}")
                    continue
                yield {"channel": message.get("channel", ""), **data}

    async def close(self) -> None:
        """Close the subscription and clean up."""
        if self._pubsub:
            try:
                if self._subscribed_channels:
                    await self._pubsub.unsubscribe(*self._subscribed_channels)
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug(f"Error closing pub/sub: {e}")
            finally:
                self._pubsub = None
                self._subscribed_channels.clear()

    @property
    def is_active(self) -> bool:
        """Check if subscription is active."""
        return self._pubsub is not None and bool(self._subscribed_channels)


async def subscribe_to_job(job_id: Optional[str] = None) -> Subscriber:
    """
    Create a subscriber for job status updates.

    Args:
        job_id: Job to monitor, or None for all jobs

    Returns:
        Configured Subscriber instance
    """
    subscriber = Subscriber()
    await subscriber.subscribe(channel_name("progress", job_id or "all"))
    return subscriber
