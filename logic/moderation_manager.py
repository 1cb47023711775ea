"""
Moderation Manager for the PopThread core

Manages gossip and comment deletion, comment reports and the admin
dashboard.
"""

import uuid
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from core.clock import Clock
from core.db_manager import DBManager
from core.error_handler import ConflictError, ForbiddenError, NotFoundError, ValidationError
from core.fanout import RealtimeFanout
from logic.comment_manager import collect_descendants
from logic.user_manager import UserManager
from models.database import CommentReport, Gossip, GossipComment, Thread, User


logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


@dataclass
class AdminDashboard:
    users: int
    active_threads: int
    expired_threads: int
    gossips: int
    comments: int
    reports: int


class ModerationManager:
    """
    Manages moderation operations.

    Responsibilities:
    - Delete gossips (author or admin) with their comments, votes and reports
    - Delete comments (author or admin) with all replies beneath them
    - File comment reports for admin review
    - Summarize the store for admins
    """

    def __init__(
        self,
        db_manager: DBManager,
        fanout: RealtimeFanout,
        clock: Clock,
        user_manager: UserManager
    ):
        """
        Initialize ModerationManager.

        Args:
            db_manager: DBManager instance for database operations
            fanout: RealtimeFanout for refresh notifications
            clock: Authoritative clock
            user_manager: UserManager for reporter and admin lookups
        """
        self.db = db_manager
        self.fanout = fanout
        self.clock = clock
        self.users = user_manager

    def delete_gossip(self, gossip_id: str, acting_user_id: str) -> None:
        """
        Delete a gossip with everything attached to it.

        Raises:
            NotFoundError: If the gossip does not exist
            ForbiddenError: Unless the actor is the author or an admin
        """
        with self.db.transaction("gossip", gossip_id) as session:
            gossip = session.get(Gossip, gossip_id)
            if not gossip:
                raise NotFoundError(f"Gossip {gossip_id[:8]} not found")
            self._require_author_or_admin(gossip.author_id, acting_user_id, "gossip")
            session.delete(gossip)

        logger.info(f"Deleted gossip {gossip_id[:8]} by {acting_user_id[:8]}")
        self.fanout.publish_refresh_gossips()

    def delete_comment(self, gossip_id: str, comment_id: str, acting_user_id: str) -> List[str]:
        """
        Delete a comment and every reply beneath it.

        Reports filed against deleted comments are kept; they carry their own
        snapshot of the comment.

        Args:
            gossip_id: Gossip the comment belongs to
            comment_id: Comment to delete
            acting_user_id: The comment's author or an admin

        Returns:
            Ids of all deleted comments, starting with ``comment_id``

        Raises:
            NotFoundError: If the gossip or comment does not exist
            ForbiddenError: Unless the actor is the author or an admin
        """
        with self.db.transaction("gossip", gossip_id) as session:
            gossip = session.get(Gossip, gossip_id)
            if not gossip:
                raise NotFoundError(f"Gossip {gossip_id[:8]} not found")

            target = next((c for c in gossip.comments if c.id == comment_id), None)
            if target is None:
                raise NotFoundError(f"Comment {comment_id[:8]} not found")
            self._require_author_or_admin(target.author_id, acting_user_id, "comment")

            deleted_ids = collect_descendants(gossip.comments, comment_id)
            doomed = set(deleted_ids)
            for comment in [c for c in gossip.comments if c.id in doomed]:
                gossip.comments.remove(comment)

        logger.info(
            f"Deleted comment {comment_id[:8]} and {len(deleted_ids) - 1} replies "
            f"by {acting_user_id[:8]}"
        )
        self.fanout.publish_refresh_gossips()
        return deleted_ids

    def report_comment(
        self,
        gossip_id: str,
        comment_id: str,
        reporter_id: str,
        reason: Optional[str] = None
    ) -> CommentReport:
        """
        Report a comment for admin review. The comment itself is untouched.

        Raises:
            NotFoundError: If the gossip, comment or reporter does not exist
            ForbiddenError: If the reporter wrote the comment
            ConflictError: If the reporter already reported it
            ValidationError: If the reason is too long
        """
        reason = (reason or "").strip() or None
        if reason and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"Reason must be at most {MAX_REASON_LENGTH} characters")

        reporter = self.users.get_user(reporter_id)

        try:
            with self.db.transaction("comment-report", comment_id, reporter_id) as session:
                comment = session.get(GossipComment, comment_id)
                if not comment or comment.gossip_id != gossip_id:
                    raise NotFoundError(f"Comment {comment_id[:8]} not found")
                if comment.author_id == reporter_id:
                    raise ForbiddenError("You cannot report your own comment")

                already = session.query(CommentReport).filter(
                    CommentReport.comment_id == comment_id,
                    CommentReport.reporter_id == reporter_id,
                ).first()
                if already:
                    raise ConflictError("You already reported this comment")

                report = CommentReport(
                    id=str(uuid.uuid4()),
                    gossip_id=gossip_id,
                    comment_id=comment_id,
                    reporter_id=reporter.id,
                    reporter=reporter.username,
                    comment_author_id=comment.author_id,
                    comment_content=comment.content,
                    reason=reason,
                    created_at=self.clock.now(),
                )
                session.add(report)
        except IntegrityError:
            raise ConflictError("You already reported this comment")

        logger.info(f"Comment {comment_id[:8]} reported by {reporter_id[:8]}")
        return report

    def list_reports(self, acting_user_id: str) -> List[CommentReport]:
        """
        All reports, newest first.

        Raises:
            ForbiddenError: Unless the actor is an admin
        """
        self._require_admin(acting_user_id)
        return self.db.get_reports()

    def get_admin_dashboard(self, acting_user_id: str) -> AdminDashboard:
        """
        Store-wide counts for the admin view.

        Raises:
            ForbiddenError: Unless the actor is an admin
        """
        self._require_admin(acting_user_id)
        now = self.clock.now()
        return AdminDashboard(
            users=self.db.count(User),
            active_threads=self.db.count(Thread, Thread.expires_at >= now),
            expired_threads=self.db.count(Thread, Thread.expires_at < now),
            gossips=self.db.count(Gossip),
            comments=self.db.count(GossipComment),
            reports=self.db.count(CommentReport),
        )

    def _require_admin(self, acting_user_id: str) -> None:
        if not self.users.is_admin(acting_user_id):
            logger.warning(f"Non-admin {acting_user_id[:8]} requested admin data")
            raise ForbiddenError("Admin access required")

    def _require_author_or_admin(self, author_id: str, acting_user_id: str, kind: str) -> None:
        if acting_user_id != author_id and not self.users.is_admin(acting_user_id):
            logger.warning(f"User {acting_user_id[:8]} may not delete this {kind}")
            raise ForbiddenError(f"Only the author or an admin can delete this {kind}")
