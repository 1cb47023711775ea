"""
Membership Gate for the PopThread core

Controls who may join a thread. A user is either a member, a pending
requester or neither; every transition between those states for one thread
runs under that thread's lock.
"""

import logging
from typing import List

from core.clock import Clock
from core.db_manager import DBManager
from core.error_handler import (
    AlreadyMemberError,
    AlreadyPendingError,
    ForbiddenError,
    NotFoundError,
    NotPendingError,
    ThreadExpiredError,
)
from core.fanout import RealtimeFanout
from logic.user_manager import UserManager
from models.database import JoinRequest, Thread, ThreadMember


logger = logging.getLogger(__name__)


class MembershipManager:
    """
    Manages join requests and their approval.

    Responsibilities:
    - Accept join requests for active threads
    - Approve or deny pending requests (creator or admin)
    - List pending requests for moderators of a thread
    """

    def __init__(
        self,
        db_manager: DBManager,
        fanout: RealtimeFanout,
        clock: Clock,
        user_manager: UserManager
    ):
        """
        Initialize MembershipManager.

        Args:
            db_manager: DBManager instance for database operations
            fanout: RealtimeFanout for refresh notifications
            clock: Authoritative clock
            user_manager: UserManager for requester and admin lookups
        """
        self.db = db_manager
        self.fanout = fanout
        self.clock = clock
        self.users = user_manager

    def request_join(self, thread_id: str, user_id: str) -> JoinRequest:
        """
        Ask to join a thread.

        Args:
            thread_id: Thread identifier
            user_id: Requesting user

        Returns:
            JoinRequest: The pending request

        Raises:
            NotFoundError: If the thread or user does not exist
            ThreadExpiredError: If the thread has expired
            AlreadyMemberError: If the user is already a member
            AlreadyPendingError: If the user already has a pending request
        """
        self.users.get_user(user_id)
        now = self.clock.now()

        with self.db.transaction("thread", thread_id) as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise NotFoundError(f"Thread {thread_id[:8]} not found")
            if thread.is_expired(now):
                raise ThreadExpiredError(f"Thread {thread_id[:8]} has expired")
            if thread.is_member(user_id):
                raise AlreadyMemberError("You are already a member of this thread")
            if user_id in thread.pending_ids:
                raise AlreadyPendingError("Your request to join is already pending")

            request = JoinRequest(user_id=user_id, requested_at=now)
            thread.pending_requests.append(request)

        logger.info(f"User {user_id[:8]} requested to join thread {thread_id[:8]}")
        self.fanout.publish_refresh_threads()
        return request

    def handle_request(
        self,
        thread_id: str,
        user_id: str,
        approve: bool,
        acting_user_id: str
    ) -> Thread:
        """
        Approve or deny a pending join request.

        Approval moves the user from pending to the end of the member list in
        one transaction. Whether the thread has expired is not checked here,
        so requests made before expiry can still be settled.

        Args:
            thread_id: Thread identifier
            user_id: The requester
            approve: True to approve, False to deny
            acting_user_id: The creator or an admin

        Returns:
            Thread: The updated thread

        Raises:
            NotFoundError: If the thread does not exist
            ForbiddenError: Unless the actor is the creator or an admin
            NotPendingError: If the user has no pending request
        """
        with self.db.transaction("thread", thread_id) as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise NotFoundError(f"Thread {thread_id[:8]} not found")
            self._require_moderator(thread, acting_user_id)

            request = next(
                (r for r in thread.pending_requests if r.user_id == user_id), None
            )
            if request is None:
                raise NotPendingError("No pending request for this user")

            thread.pending_requests.remove(request)
            if approve:
                position = max((m.position for m in thread.members), default=-1) + 1
                thread.members.append(ThreadMember(
                    user_id=user_id,
                    position=position,
                    joined_at=self.clock.now(),
                ))

        logger.info(
            f"{'Approved' if approve else 'Denied'} {user_id[:8]} for thread {thread_id[:8]} "
            f"(by {acting_user_id[:8]})"
        )
        self.fanout.publish_refresh_threads()
        return thread

    def list_pending(self, thread_id: str, acting_user_id: str) -> List[JoinRequest]:
        """
        Pending requests for a thread, oldest first.

        Raises:
            NotFoundError: If the thread does not exist
            ForbiddenError: Unless the actor is the creator or an admin
        """
        thread = self.db.get_thread_by_id(thread_id)
        if not thread:
            raise NotFoundError(f"Thread {thread_id[:8]} not found")
        self._require_moderator(thread, acting_user_id)
        return list(thread.pending_requests)

    def _require_moderator(self, thread: Thread, acting_user_id: str) -> None:
        if acting_user_id != thread.creator_id and not self.users.is_admin(acting_user_id):
            logger.warning(
                f"User {acting_user_id[:8]} tried to moderate thread {thread.id[:8]}"
            )
            raise ForbiddenError("Only the creator or an admin can manage requests")
