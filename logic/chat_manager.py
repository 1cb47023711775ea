"""
Chat Manager for the PopThread core

Manages the per-thread chat log. Messages are appended under the thread's
lock with a server-assigned sequence number and pushed to subscribers after
the write commits.
"""

import uuid
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session, lazyload

from core.clock import Clock
from core.db_manager import DBManager
from core.error_handler import (
    EmptyMessageError,
    NotAMemberError,
    NotFoundError,
    ThreadExpiredError,
    ValidationError,
)
from core.fanout import RealtimeFanout
from logic.user_manager import UserManager
from models.database import Thread, ThreadMessage


logger = logging.getLogger(__name__)


@dataclass
class ReplyContext:
    """What a message replies to, as the client saw it."""
    message_id: Optional[str] = None
    user: Optional[str] = None
    preview: Optional[str] = None


def truncate_preview(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[:max(limit - 3, 0)].rstrip() + "..."


class ChatManager:
    """
    Manages thread chat operations.

    Responsibilities:
    - Append messages from members of active threads
    - Snapshot reply context at send time
    - Return a thread's chat in append order
    - Publish new messages to realtime subscribers
    """

    def __init__(
        self,
        db_manager: DBManager,
        fanout: RealtimeFanout,
        clock: Clock,
        user_manager: UserManager,
        max_message_length: int = 2000,
        reply_preview_length: int = 120
    ):
        """
        Initialize ChatManager.

        Args:
            db_manager: DBManager instance for database operations
            fanout: RealtimeFanout for new-message events
            clock: Authoritative clock
            user_manager: UserManager for sender lookups
            max_message_length: Longest accepted message after trimming
            reply_preview_length: Longest stored reply preview
        """
        self.db = db_manager
        self.fanout = fanout
        self.clock = clock
        self.users = user_manager
        self.max_message_length = max_message_length
        self.reply_preview_length = reply_preview_length

    def send_message(
        self,
        thread_id: str,
        sender_id: str,
        text: str,
        reply: Optional[ReplyContext] = None
    ) -> ThreadMessage:
        """
        Append a message to a thread's chat.

        Messages for one thread are serialized by the thread lock, so their
        sequence numbers are strictly increasing with no gaps. Different
        threads never wait on each other.

        Args:
            thread_id: Thread identifier
            sender_id: Sending user
            text: Message text, trimmed before storing
            reply: Optional reply context

        Returns:
            ThreadMessage: The stored message

        Raises:
            NotFoundError: If the thread or sender does not exist
            NotAMemberError: If the sender is not a member
            ThreadExpiredError: If the thread has expired
            EmptyMessageError: If the trimmed text is empty
            ValidationError: If the text is too long
        """
        text = (text or "").strip()
        if not text:
            raise EmptyMessageError("Message cannot be empty")
        if len(text) > self.max_message_length:
            raise ValidationError(
                f"Message must be at most {self.max_message_length} characters"
            )

        sender = self.users.get_user(sender_id)
        now = self.clock.now()

        with self.db.transaction("thread", thread_id) as session:
            # The chat log is never needed to append to it
            thread = session.get(Thread, thread_id, options=[lazyload(Thread.chat)])
            if not thread:
                raise NotFoundError(f"Thread {thread_id[:8]} not found")
            if not thread.is_member(sender_id):
                logger.info(f"Rejected message from non-member {sender_id[:8]} in {thread_id[:8]}")
                raise NotAMemberError("Join this thread to send messages")
            if thread.is_expired(now):
                raise ThreadExpiredError(f"Thread {thread_id[:8]} has expired")

            message = ThreadMessage(
                id=str(uuid.uuid4()),
                thread_id=thread_id,
                user=sender.username,
                user_id=sender.id,
                message=text,
                sequence_number=self.db.last_sequence_number(session, thread_id) + 1,
                timestamp=now,
            )
            if reply is not None:
                self._apply_reply(session, message, reply)

            session.add(message)

        logger.debug(
            f"Message {message.id[:8]} #{message.sequence_number} in thread {thread_id[:8]}"
        )
        self.fanout.publish_new_message(message.to_payload())
        return message

    def _apply_reply(self, session: Session, message: ThreadMessage, reply: ReplyContext) -> None:
        """
        Snapshot the replied-to message onto the new one.

        A reply to a message in the same thread copies the stored author and
        text; anything else keeps the client's snapshot without a link.
        """
        original = None
        if reply.message_id:
            original = session.get(ThreadMessage, reply.message_id)
            if original is not None and original.thread_id != message.thread_id:
                original = None

        if original is not None:
            message.reply_to_message_id = original.id
            message.reply_to_user = original.user
            message.reply_preview = truncate_preview(original.message, self.reply_preview_length)
        else:
            message.reply_to_message_id = None
            message.reply_to_user = reply.user
            message.reply_preview = truncate_preview(reply.preview, self.reply_preview_length)

    def get_messages(
        self,
        thread_id: str,
        after_sequence: Optional[int] = None
    ) -> List[ThreadMessage]:
        """
        Retrieve a thread's chat in append order.

        Args:
            thread_id: Thread identifier
            after_sequence: Return only messages after this sequence number,
                for catching up after a missed push

        Returns:
            List of ThreadMessage objects

        Raises:
            NotFoundError: If the thread does not exist
        """
        if not self.db.get_thread_by_id(thread_id):
            raise NotFoundError(f"Thread {thread_id[:8]} not found")
        return self.db.get_messages_for_thread(thread_id, after_sequence)
