"""
Dispatcher: accepts posts, persists them, then fans them out.

A message is published only after the store has committed it, so every
broadcast message can also be fetched by catch-up. Store and registry
errors propagate to the caller unchanged; per-subscriber delivery
failures are the hub's business and never fail a post.
"""
import logging
from typing import List, Optional

from chatrelay.errors import ChatRelayError, Malformed, NotFound, Unauthorized
from chatrelay.hub import ConnectionHub
from chatrelay.metrics import record_post_outcome
from chatrelay.registry import ChannelRegistry
from chatrelay.schemas import ChannelKind, Message
from chatrelay.storage import MessageStore

logger = logging.getLogger(__name__)


class Dispatcher:

    def __init__(
        self,
        store: MessageStore,
        hub: ConnectionHub,
        registry: ChannelRegistry,
        max_content_length: int = 4096,
        history_max_limit: int = 100,
    ):
        self.store = store
        self.hub = hub
        self.registry = registry
        self.max_content_length = max_content_length
        self.history_max_limit = history_max_limit

    def _validate_content(self, content) -> None:
        if not isinstance(content, str) or not content.strip():
            raise Malformed("content must be a non-empty string")
        if len(content) > self.max_content_length:
            raise Malformed(f"content exceeds {self.max_content_length} characters")

    def _authorize(self, user_id: str, channel_id: str) -> None:
        if not self.registry.exists(channel_id):
            raise NotFound(f"channel {channel_id} not found")
        if not self.registry.is_member(user_id, channel_id):
            raise Unauthorized(f"user {user_id} is not a member of channel {channel_id}")

    async def post_message(self, channel_id: str, sender_id: str, content: str) -> Message:
        """
        Validate, append and publish a message.

        Raises:
            Malformed: empty or oversized content, or a voice channel
            NotFound: unknown channel
            Unauthorized: sender is not a member or is muted
            StoreUnavailable: the append was not durable; nothing was published
        """
        try:
            self._validate_content(content)
            self._authorize(sender_id, channel_id)
            if self.registry.is_muted(sender_id, channel_id):
                raise Unauthorized(f"user {sender_id} is muted in channel {channel_id}")
            if self.registry.get_channel(channel_id).kind is not ChannelKind.TEXT:
                raise Malformed(f"channel {channel_id} does not accept text messages")

            async with self.hub.channel_lock(channel_id):
                message = self.store.append(channel_id, sender_id, content)
                delivered = self.hub.deliver(channel_id, message)
        except ChatRelayError as e:
            record_post_outcome(e.code)
            logger.info(f"Post to {channel_id} by {sender_id} rejected: {e.code}")
            raise

        record_post_outcome("created")
        logger.info(f"Message seq {message.seq} posted to {channel_id}, delivered to {delivered} connections")
        return message

    def get_history(
        self,
        channel_id: str,
        after_seq: int = 0,
        limit: int = 50,
        user_id: Optional[str] = None,
    ) -> List[Message]:
        """
        Messages with seq > after_seq in ascending order. When user_id is
        given the caller must be a member of the channel.
        """
        if after_seq < 0:
            raise Malformed("after_seq must not be negative")
        if user_id is not None:
            self._authorize(user_id, channel_id)

        limit = max(1, min(limit, self.history_max_limit))
        return self.store.read_from(channel_id, after_seq, limit)

    async def subscribe(self, connection_id: str, user_id: str, channel_id: str, last_seen_seq: int = 0) -> int:
        """Authorize user_id for the channel, then catch up and go live."""
        if last_seen_seq < 0:
            raise Malformed("last_seen_seq must not be negative")
        self._authorize(user_id, channel_id)
        return await self.hub.subscribe(connection_id, channel_id, last_seen_seq)

    def unsubscribe(self, connection_id: str, channel_id: str) -> bool:
        return self.hub.unsubscribe(connection_id, channel_id)
