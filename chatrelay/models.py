"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic domain and request/response models, see schemas.py.
"""

from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint

from chatrelay.storage import Base


class MessageRecord(Base):
    """
    Append-only message log, one ordered run of seq values per channel.

    Table: messages
    Unique: (channel_id, seq)
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("channel_id", "seq", name="uq_messages_channel_seq"),
    )

    id = Column(String, primary_key=True)
    channel_id = Column(String, nullable=False, index=True)
    sender_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    seq = Column(Integer, nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class ChannelSequence(Base):
    """
    Last assigned seq per channel.

    Updated in the same transaction as the message insert, so a rolled
    back append leaves no gap.
    """
    __tablename__ = "channel_sequences"

    channel_id = Column(String, primary_key=True)
    last_seq = Column(Integer, nullable=False, default=0)


class ParentRecord(Base):
    """A chat or a group: the owner of a set of channels and of membership."""
    __tablename__ = "parents"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # chat | group
    owner_id = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)


class ParentMember(Base):
    __tablename__ = "parent_members"

    parent_id = Column(String, ForeignKey("parents.id"), primary_key=True)
    user_id = Column(String, primary_key=True)


class ChannelRecord(Base):
    __tablename__ = "channels"

    id = Column(String, primary_key=True)
    parent_id = Column(String, ForeignKey("parents.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # text | voice
    created_at = Column(String, nullable=False)


class BanRecord(Base):
    """A ban without channel_id covers every channel of the parent."""
    __tablename__ = "bans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    parent_id = Column(String, ForeignKey("parents.id"), nullable=False)
    channel_id = Column(String, nullable=True)
    banned_at = Column(String, nullable=False)


class MuteRecord(Base):
    """Forbids posting. A null mute_duration never expires."""
    __tablename__ = "mutes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    parent_id = Column(String, ForeignKey("parents.id"), nullable=False)
    channel_id = Column(String, nullable=True)
    muted_at = Column(String, nullable=False)
    mute_duration = Column(Integer, nullable=True)  # seconds
