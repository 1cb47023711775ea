"""
SQLAlchemy database models for the PopThread core.

This module defines all database models including User, Thread,
ThreadMember, JoinRequest, ThreadMessage, Gossip, GossipComment, the vote
tables and CommentReport.
"""

from typing import List, Optional, Set

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    Text,
    LargeBinary,
    ForeignKey,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from core.clock import utcnow

Base = declarative_base()


VOTE_UP = "up"
VOTE_DOWN = "down"


class User(Base):
    """
    Represents an account.

    Credentials are stored as a Scrypt hash and salt; issuing sessions for
    the account is the job of the HTTP layer, not this core.
    """
    __tablename__ = 'users'

    id = Column(String, primary_key=True)  # UUID
    username = Column(String, nullable=False, unique=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    password_hash = Column(LargeBinary, nullable=False)
    password_salt = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"


class Thread(Base):
    """
    Represents a time-bounded pop-up community.

    A thread has a creator, an ordered member list (creator first), a set of
    pending join requests and an append-only chat log. It stays readable
    after ``expires_at`` but drops out of active listings.
    """
    __tablename__ = 'threads'

    id = Column(String, primary_key=True)  # UUID
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    location = Column(String, nullable=False)
    creator_id = Column(String, ForeignKey('users.id'), nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    # Relationships
    creator = relationship("User")
    members = relationship(
        "ThreadMember",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="ThreadMember.position",
        lazy="selectin",
    )
    pending_requests = relationship(
        "JoinRequest",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="JoinRequest.requested_at",
        lazy="selectin",
    )
    chat = relationship(
        "ThreadMessage",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="ThreadMessage.sequence_number",
        lazy="selectin",
    )

    @property
    def member_ids(self) -> List[str]:
        """Member user ids in join order; the creator is always first."""
        return [member.user_id for member in self.members]

    @property
    def pending_ids(self) -> Set[str]:
        return {request.user_id for request in self.pending_requests}

    def is_member(self, user_id: str) -> bool:
        return user_id == self.creator_id or user_id in self.member_ids

    def is_expired(self, now) -> bool:
        return now > self.expires_at

    def __repr__(self):
        return f"<Thread(id={self.id}, title={self.title})>"


class ThreadMember(Base):
    """Membership row; ``position`` preserves join order."""
    __tablename__ = 'thread_members'
    __table_args__ = (UniqueConstraint('thread_id', 'user_id'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(String, ForeignKey('threads.id'), nullable=False)
    user_id = Column(String, nullable=False)
    position = Column(Integer, nullable=False)
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    thread = relationship("Thread", back_populates="members")

    def __repr__(self):
        return f"<ThreadMember(thread={self.thread_id}, user={self.user_id})>"


class JoinRequest(Base):
    """A user's unapproved request to join a thread."""
    __tablename__ = 'join_requests'
    __table_args__ = (UniqueConstraint('thread_id', 'user_id'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(String, ForeignKey('threads.id'), nullable=False)
    user_id = Column(String, nullable=False)
    requested_at = Column(DateTime, nullable=False, default=utcnow)

    thread = relationship("Thread", back_populates="pending_requests")

    def __repr__(self):
        return f"<JoinRequest(thread={self.thread_id}, user={self.user_id})>"


class ThreadMessage(Base):
    """
    A single chat message within a thread.

    Messages are immutable. ``sequence_number`` is assigned by the server
    and defines the total order of a thread's chat. Reply fields are a
    snapshot of the replied-to message taken at send time.
    """
    __tablename__ = 'thread_messages'
    __table_args__ = (UniqueConstraint('thread_id', 'sequence_number'),)

    id = Column(String, primary_key=True)  # UUID
    thread_id = Column(String, ForeignKey('threads.id'), nullable=False)
    user = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    sequence_number = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    reply_to_message_id = Column(String, nullable=True)
    reply_to_user = Column(String, nullable=True)
    reply_preview = Column(Text, nullable=True)

    thread = relationship("Thread", back_populates="chat")

    def to_payload(self) -> dict:
        """Serializable form used by fan-out events."""
        payload = {
            "id": self.id,
            "threadId": self.thread_id,
            "user": self.user,
            "userId": self.user_id,
            "message": self.message,
            "sequence": self.sequence_number,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.reply_to_message_id or self.reply_preview:
            payload["replyToMessageId"] = self.reply_to_message_id
            payload["replyToUser"] = self.reply_to_user
            payload["replyPreview"] = self.reply_preview
        return payload

    def __repr__(self):
        return f"<ThreadMessage(id={self.id}, seq={self.sequence_number})>"


class _VoteTallyMixin:
    """Derived vote views over a ``votes`` relationship."""

    @property
    def upvoted_by(self) -> Set[str]:
        return {vote.user_id for vote in self.votes if vote.value == VOTE_UP}

    @property
    def downvoted_by(self) -> Set[str]:
        return {vote.user_id for vote in self.votes if vote.value == VOTE_DOWN}

    @property
    def upvotes(self) -> int:
        return len(self.upvoted_by)

    @property
    def downvotes(self) -> int:
        return len(self.downvoted_by)


class Gossip(_VoteTallyMixin, Base):
    """
    Represents a votable short post on the gossip board.

    Vote counts are never stored; they are the sizes of the derived
    ``upvoted_by``/``downvoted_by`` sets.
    """
    __tablename__ = 'gossips'

    id = Column(String, primary_key=True)  # UUID
    content = Column(Text, nullable=False)
    author_id = Column(String, ForeignKey('users.id'), nullable=False)
    author = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
    last_activity = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    author_user = relationship("User")
    votes = relationship(
        "GossipVote",
        back_populates="gossip",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    comments = relationship(
        "GossipComment",
        back_populates="gossip",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    reports = relationship(
        "CommentReport",
        back_populates="gossip",
        cascade="all, delete-orphan",
    )

    def is_expired(self, now) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def __repr__(self):
        return f"<Gossip(id={self.id}, author={self.author})>"


class GossipVote(Base):
    """One user's vote on a gossip; at most one row per (gossip, user)."""
    __tablename__ = 'gossip_votes'
    __table_args__ = (UniqueConstraint('gossip_id', 'user_id'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    gossip_id = Column(String, ForeignKey('gossips.id'), nullable=False)
    user_id = Column(String, nullable=False)
    value = Column(String, nullable=False)  # 'up' or 'down'

    gossip = relationship("Gossip", back_populates="votes")


class GossipComment(_VoteTallyMixin, Base):
    """
    A comment on a gossip.

    Comments are stored flat; ``parent_comment_id`` links a reply to its
    parent and the tree is rebuilt on read.
    """
    __tablename__ = 'gossip_comments'

    id = Column(String, primary_key=True)  # UUID
    gossip_id = Column(String, ForeignKey('gossips.id'), nullable=False)
    content = Column(Text, nullable=False)
    author = Column(String, nullable=False)
    author_id = Column(String, nullable=False)
    parent_comment_id = Column(String, nullable=True)
    reply_to = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    gossip = relationship("Gossip", back_populates="comments")
    votes = relationship(
        "CommentVote",
        back_populates="comment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<GossipComment(id={self.id}, parent={self.parent_comment_id})>"


class CommentVote(Base):
    """One user's vote on a comment; at most one row per (comment, user)."""
    __tablename__ = 'comment_votes'
    __table_args__ = (UniqueConstraint('comment_id', 'user_id'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    comment_id = Column(String, ForeignKey('gossip_comments.id'), nullable=False)
    user_id = Column(String, nullable=False)
    value = Column(String, nullable=False)

    comment = relationship("GossipComment", back_populates="votes")


class CommentReport(Base):
    """
    A report filed against a comment for later admin review.

    The comment author and content are snapshotted so the report survives
    deletion of the comment itself.
    """
    __tablename__ = 'comment_reports'
    __table_args__ = (UniqueConstraint('comment_id', 'reporter_id'),)

    id = Column(String, primary_key=True)  # UUID
    gossip_id = Column(String, ForeignKey('gossips.id'), nullable=False)
    comment_id = Column(String, nullable=False)
    reporter_id = Column(String, nullable=False)
    reporter = Column(String, nullable=False)
    comment_author_id = Column(String, nullable=False)
    comment_content = Column(Text, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    gossip = relationship("Gossip", back_populates="reports")

    def __repr__(self):
        return f"<CommentReport(id={self.id}, comment={self.comment_id})>"
