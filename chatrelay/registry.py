"""
Channel registry: the authorization boundary consumed by the dispatcher.

Answers whether a channel exists and whether a user may read or post in
it. Membership is held by the channel's parent (a chat or a group): the
owner and invited members belong, unless banned from the parent or from
that channel. Muted users may read but not post.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from chatrelay.errors import NotFound, Unauthorized
from chatrelay.logging_utils import utc_timestamp
from chatrelay.schemas import Channel, ChannelKind, Parent, ParentKind
from chatrelay.storage import SessionLocal

logger = logging.getLogger(__name__)


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ChannelRegistry:
    """Channels, their parents, membership, bans and mutes."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Queries used by the delivery core
    # -------------------------------------------------------------------------

    def exists(self, channel_id: str) -> bool:
        from chatrelay.models import ChannelRecord

        with self._session_factory() as db:
            return db.get(ChannelRecord, channel_id) is not None

    def get_channel(self, channel_id: str) -> Channel:
        from chatrelay.models import ChannelRecord

        with self._session_factory() as db:
            record = db.get(ChannelRecord, channel_id)
            if record is None:
                raise NotFound(f"channel {channel_id} not found")
            return Channel.model_validate(record)

    def is_member(self, user_id: str, channel_id: str) -> bool:
        """
        True if user_id belongs to the channel's parent and is not banned.

        Unknown channels have no members.
        """
        from chatrelay.models import BanRecord, ChannelRecord

        with self._session_factory() as db:
            channel = db.get(ChannelRecord, channel_id)
            if channel is None:
                return False
            if not self._belongs_to_parent(db, user_id, channel.parent_id):
                return False

            banned = (
                db.query(BanRecord)
                .filter(BanRecord.user_id == user_id)
                .filter(BanRecord.parent_id == channel.parent_id)
                .filter(or_(BanRecord.channel_id.is_(None), BanRecord.channel_id == channel_id))
                .first()
            )
            return banned is None

    def is_muted(self, user_id: str, channel_id: str) -> bool:
        """True if an unexpired mute covers user_id in this channel."""
        from chatrelay.models import ChannelRecord, MuteRecord

        with self._session_factory() as db:
            channel = db.get(ChannelRecord, channel_id)
            if channel is None:
                return False

            mutes = (
                db.query(MuteRecord)
                .filter(MuteRecord.user_id == user_id)
                .filter(MuteRecord.parent_id == channel.parent_id)
                .filter(or_(MuteRecord.channel_id.is_(None), MuteRecord.channel_id == channel_id))
                .all()
            )

        now = datetime.now(timezone.utc)
        for mute in mutes:
            if mute.mute_duration is None:
                return True
            if _parse_ts(mute.muted_at) + timedelta(seconds=mute.mute_duration) > now:
                return True
        return False

    def is_parent_member(self, user_id: str, parent_id: str) -> bool:
        with self._session_factory() as db:
            return self._belongs_to_parent(db, user_id, parent_id)

    def _belongs_to_parent(self, db: Session, user_id: str, parent_id: str) -> bool:
        from chatrelay.models import ParentMember, ParentRecord

        parent = db.get(ParentRecord, parent_id)
        if parent is None:
            return False
        if parent.owner_id == user_id:
            return True
        return db.get(ParentMember, (parent_id, user_id)) is not None

    # -------------------------------------------------------------------------
    # Channel and membership management
    # -------------------------------------------------------------------------

    def create_parent(self, name: str, owner_id: str, kind: ParentKind = ParentKind.CHAT) -> Parent:
        from chatrelay.models import ParentRecord

        kind = ParentKind(kind)
        with self._session_factory() as db:
            record = ParentRecord(
                id=uuid.uuid4().hex,
                name=name,
                kind=kind.value,
                owner_id=owner_id,
                created_at=utc_timestamp(),
            )
            db.add(record)
            db.commit()
            parent = Parent.model_validate(record)

        logger.info(f"Created {kind.value} {parent.id} owned by {owner_id}")
        return parent

    def add_member(self, parent_id: str, user_id: str, invited_by: Optional[str] = None) -> None:
        """
        Add user_id to a parent. When invited_by is given only the owner may
        invite. Adding an existing member is a no-op.
        """
        from chatrelay.models import ParentMember, ParentRecord

        with self._session_factory() as db:
            parent = db.get(ParentRecord, parent_id)
            if parent is None:
                raise NotFound(f"parent {parent_id} not found")
            if invited_by is not None and parent.owner_id != invited_by:
                raise Unauthorized(f"only the owner may invite users to {parent_id}")
            if parent.owner_id == user_id or db.get(ParentMember, (parent_id, user_id)) is not None:
                return

            db.add(ParentMember(parent_id=parent_id, user_id=user_id))
            db.commit()

        logger.info(f"Added user {user_id} to {parent_id}")

    def create_channel(self, parent_id: str, name: str, kind: ChannelKind = ChannelKind.TEXT) -> Channel:
        from chatrelay.models import ChannelRecord, ParentRecord

        kind = ChannelKind(kind)
        with self._session_factory() as db:
            if db.get(ParentRecord, parent_id) is None:
                raise NotFound(f"parent {parent_id} not found")

            record = ChannelRecord(
                id=uuid.uuid4().hex,
                parent_id=parent_id,
                name=name,
                kind=kind.value,
                created_at=utc_timestamp(),
            )
            db.add(record)
            db.commit()
            channel = Channel.model_validate(record)

        logger.info(f"Created {kind.value} channel {channel.id} in {parent_id}")
        return channel

    def list_channels(self, parent_id: str) -> List[Channel]:
        from chatrelay.models import ChannelRecord, ParentRecord

        with self._session_factory() as db:
            if db.get(ParentRecord, parent_id) is None:
                raise NotFound(f"parent {parent_id} not found")
            rows = (
                db.query(ChannelRecord)
                .filter(ChannelRecord.parent_id == parent_id)
                .order_by(ChannelRecord.created_at.asc(), ChannelRecord.id.asc())
                .all()
            )
            return [Channel.model_validate(row) for row in rows]

    def ban(self, user_id: str, parent_id: str, channel_id: Optional[str] = None) -> None:
        from chatrelay.models import BanRecord, ParentRecord

        with self._session_factory() as db:
            if db.get(ParentRecord, parent_id) is None:
                raise NotFound(f"parent {parent_id} not found")
            db.add(BanRecord(
                user_id=user_id,
                parent_id=parent_id,
                channel_id=channel_id,
                banned_at=utc_timestamp(),
            ))
            db.commit()

        logger.info(f"Banned user {user_id} from {channel_id or parent_id}")

    def mute(
        self,
        user_id: str,
        parent_id: str,
        channel_id: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> None:
        from chatrelay.models import MuteRecord, ParentRecord

        with self._session_factory() as db:
            if db.get(ParentRecord, parent_id) is None:
                raise NotFound(f"parent {parent_id} not found")
            db.add(MuteRecord(
                user_id=user_id,
                parent_id=parent_id,
                channel_id=channel_id,
                muted_at=utc_timestamp(),
                mute_duration=duration_seconds,
            ))
            db.commit()

        logger.info(f"Muted user {user_id} in {channel_id or parent_id} for {duration_seconds or 'unlimited'}s")
