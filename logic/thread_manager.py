"""
Thread Manager for the PopThread core

Manages the thread lifecycle: creation, editing and extension, deletion,
active listings with sorting and filtering, and per-user insights.
"""

import uuid
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Union

from core.clock import Clock
from core.db_manager import DBManager
from core.error_handler import ForbiddenError, NotFoundError, ValidationError
from core.fanout import RealtimeFanout
from logic.user_manager import UserManager
from models.database import Thread, ThreadMember


logger = logging.getLogger(__name__)


THREAD_SORTS = ("newest", "oldest", "mostMembers", "expiringSoon", "mostActive")


@dataclass
class ThreadStats:
    created: int = 0
    joined: int = 0
    impact: int = 0


@dataclass
class ThreadInsights:
    """Per-user aggregate shown on the profile page."""
    stats: ThreadStats
    created_threads: List[Thread] = field(default_factory=list)
    joined_threads: List[Thread] = field(default_factory=list)


def normalize_tags(tags: Union[None, str, Iterable[str]], category: Optional[str] = None) -> List[str]:
    """
    Clean a tag list while keeping display order.

    Accepts a list or a comma separated string. Tags are trimmed, empties
    dropped and duplicates removed case-insensitively (first spelling wins).
    A category other than "all" is placed first.
    """
    if tags is None:
        raw = []
    elif isinstance(tags, str):
        raw = tags.split(",")
    else:
        raw = list(tags)

    if category and category.strip().lower() != "all":
        raw.insert(0, category)

    result = []
    seen = set()
    for tag in raw:
        tag = str(tag).strip()
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            result.append(tag)
    return result


class ThreadManager:
    """
    Manages thread lifecycle operations.

    Responsibilities:
    - Create threads (creator becomes the first member)
    - Update and extend threads (creator or admin)
    - Delete threads with their chat (creator or admin)
    - List active threads with sort, category and search
    - Aggregate created/joined threads per user
    """

    def __init__(
        self,
        db_manager: DBManager,
        fanout: RealtimeFanout,
        clock: Clock,
        user_manager: UserManager,
        allowed_durations: Iterable[int] = (1, 2, 4, 8),
        default_duration: int = 2
    ):
        """
        Initialize ThreadManager.

        Args:
            db_manager: DBManager instance for database operations
            fanout: RealtimeFanout for refresh notifications
            clock: Authoritative clock
            user_manager: UserManager for creator and admin lookups
            allowed_durations: Lifetimes (hours) a new thread may pick
            default_duration: Lifetime used when none is given
        """
        self.db = db_manager
        self.fanout = fanout
        self.clock = clock
        self.users = user_manager
        self.allowed_durations = tuple(allowed_durations)
        self.default_duration = default_duration

    def create_thread(
        self,
        creator_id: str,
        title: str,
        description: str,
        location: str,
        tags: Union[None, str, Iterable[str]] = None,
        category: Optional[str] = None,
        duration_hours: Optional[int] = None
    ) -> Thread:
        """
        Create a new thread.

        Args:
            creator_id: Creating user's id
            title: Thread title (at least 3 characters)
            description: Empty or at least 20 characters
            location: Where it happens (at least 2 characters)
            tags: List or comma separated string
            category: Optional category, stored as the first tag
            duration_hours: One of the allowed durations

        Returns:
            Thread: Created thread

        Raises:
            ValidationError: If any field is invalid
            NotFoundError: If the creator does not exist
        """
        title, description, location = self._validate_fields(title, description, location)

        if duration_hours is None:
            duration_hours = self.default_duration
        if duration_hours not in self.allowed_durations:
            raise ValidationError(
                f"Duration must be one of {', '.join(str(d) for d in self.allowed_durations)} hours"
            )

        creator = self.users.get_user(creator_id)
        now = self.clock.now()

        thread = Thread(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            location=location,
            creator_id=creator.id,
            tags=normalize_tags(tags, category),
            created_at=now,
            expires_at=now + timedelta(hours=duration_hours),
            members=[ThreadMember(user_id=creator.id, position=0, joined_at=now)],
            pending_requests=[],
            chat=[],
        )

        with self.db.transaction() as session:
            session.add(thread)

        logger.info(
            f"Created thread '{title}' with ID {thread.id[:8]} by {creator_id[:8]} "
            f"for {duration_hours}h"
        )

        self.fanout.publish_refresh_threads()
        return thread

    def _validate_fields(self, title: str, description: str, location: str):
        title = (title or "").strip()
        description = (description or "").strip()
        location = (location or "").strip()

        if len(title) < 3:
            raise ValidationError("Give your thread a name of at least 3 characters")
        if description and len(description) < 20:
            raise ValidationError("Share at least 20 characters or leave the description blank")
        if len(location) < 2:
            raise ValidationError("Where is this happening? Location needs at least 2 characters")
        return title, description, location

    def get_thread(self, thread_id: str) -> Thread:
        """
        Retrieve a thread, expired or not.

        Raises:
            NotFoundError: If the thread does not exist
        """
        thread = self.db.get_thread_by_id(thread_id)
        if not thread:
            raise NotFoundError(f"Thread {thread_id[:8]} not found")
        return thread

    def update_thread(
        self,
        thread_id: str,
        acting_user_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        tags: Union[None, str, Iterable[str]] = None,
        extend_hours: Optional[int] = None
    ) -> Thread:
        """
        Edit a thread's details or extend its lifetime.

        Extension pushes ``expires_at`` forward from whichever is later, now
        or the current expiry, so an expired thread can be revived.

        Raises:
            NotFoundError: If the thread does not exist
            ForbiddenError: Unless the actor is the creator or an admin
            ValidationError: If a field is invalid
        """
        if extend_hours is not None and (not isinstance(extend_hours, int) or extend_hours <= 0):
            raise ValidationError("Extension must be a positive number of hours")

        with self.db.transaction("thread", thread_id) as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise NotFoundError(f"Thread {thread_id[:8]} not found")
            self._require_owner(thread, acting_user_id, "edit")

            new_title, new_description, new_location = self._validate_fields(
                thread.title if title is None else title,
                thread.description if description is None else description,
                thread.location if location is None else location,
            )
            thread.title = new_title
            thread.description = new_description
            thread.location = new_location
            if tags is not None:
                thread.tags = normalize_tags(tags)
            if extend_hours is not None:
                base = max(self.clock.now(), thread.expires_at)
                thread.expires_at = base + timedelta(hours=extend_hours)

        logger.info(f"Thread {thread_id[:8]} updated by {acting_user_id[:8]}")
        self.fanout.publish_refresh_threads()
        return thread

    def delete_thread(self, thread_id: str, acting_user_id: str) -> None:
        """
        Hard-delete a thread together with its members, requests and chat.

        Raises:
            NotFoundError: If the thread does not exist
            ForbiddenError: Unless the actor is the creator or an admin
        """
        with self.db.transaction("thread", thread_id) as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise NotFoundError(f"Thread {thread_id[:8]} not found")
            self._require_owner(thread, acting_user_id, "delete")
            message_count = len(thread.chat)
            session.delete(thread)

        logger.info(
            f"Deleted thread {thread_id[:8]} ({message_count} messages) by {acting_user_id[:8]}"
        )
        self.fanout.publish_refresh_threads()

    def _require_owner(self, thread: Thread, acting_user_id: str, action: str) -> None:
        if acting_user_id != thread.creator_id and not self.users.is_admin(acting_user_id):
            logger.warning(f"User {acting_user_id[:8]} may not {action} thread {thread.id[:8]}")
            raise ForbiddenError(f"Only the creator or an admin can {action} this thread")

    def list_active_threads(
        self,
        sort: str = "newest",
        category: Optional[str] = None,
        search: Optional[str] = None
    ) -> List[Thread]:
        """
        List threads that have not expired.

        Args:
            sort: One of newest, oldest, mostMembers, expiringSoon, mostActive
            category: Keep threads with a tag equal to or containing it
            search: Case-insensitive match on title, description, location or tags

        Returns:
            List of Thread objects

        Raises:
            ValidationError: If the sort option is unknown
        """
        if sort not in THREAD_SORTS:
            raise ValidationError(f"Unknown sort '{sort}'")

        threads = self.db.get_active_threads(self.clock.now())

        if category and category.strip().lower() != "all":
            needle = category.strip().lower()
            threads = [
                t for t in threads
                if any(needle in tag.lower() for tag in t.tags or [])
            ]

        if search and search.strip():
            needle = search.strip().lower()
            threads = [t for t in threads if self._matches(t, needle)]

        return self._sort_threads(threads, sort)

    @staticmethod
    def _matches(thread: Thread, needle: str) -> bool:
        haystacks = [thread.title, thread.description or "", thread.location] + list(thread.tags or [])
        return any(needle in value.lower() for value in haystacks)

    @staticmethod
    def _sort_threads(threads: List[Thread], sort: str) -> List[Thread]:
        # id as the final key keeps equal-ranked threads in a stable order
        if sort == "oldest":
            return sorted(threads, key=lambda t: (t.created_at, t.id))
        if sort == "mostMembers":
            return sorted(threads, key=lambda t: (-len(t.members), -t.created_at.timestamp(), t.id))
        if sort == "expiringSoon":
            return sorted(threads, key=lambda t: (t.expires_at, t.id))
        if sort == "mostActive":
            return sorted(threads, key=lambda t: (-len(t.chat), -t.created_at.timestamp(), t.id))
        return sorted(threads, key=lambda t: (-t.created_at.timestamp(), t.id))

    def get_user_insights(self, user_id: str) -> ThreadInsights:
        """
        Aggregate a user's created and joined threads.

        ``impact`` is the total member count across the user's created threads.
        """
        created, joined = self.db.get_threads_for_user(user_id)
        stats = ThreadStats(
            created=len(created),
            joined=len(joined),
            impact=sum(len(thread.members) for thread in created),
        )
        return ThreadInsights(stats=stats, created_threads=created, joined_threads=joined)

    def get_member_names(self, thread: Thread) -> Dict[str, str]:
        """Map the thread's member ids to usernames for display."""
        return self.db.get_usernames(thread.member_ids)
