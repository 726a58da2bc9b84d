# services/progress_events.py
"""
Best-effort real-time progress events over Redis pub/sub
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)


def newsletter_channel(newsletter_id: str) -> str:
    return f'newsletter:{newsletter_id}'


class ProgressPublisher:
    """Publishes sending progress; failures are logged and never raised"""

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis_client = redis_client

    @classmethod
    def from_url(cls, redis_url: Optional[str]) -> 'ProgressPublisher':
        if not redis_url:
            return cls(None)
        return cls(redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        ))

    def publish(self, newsletter_id: str, event_type: str, data: Dict[str, Any]) -> bool:
        if self.redis_client is None:
            return False

        try:
            self.redis_client.publish(newsletter_channel(newsletter_id), json.dumps({
                'timestamp': datetime.utcnow().isoformat(),
                'type': event_type,
                'data': data
            }))
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to publish real-time update: {str(e)}")
            return False
