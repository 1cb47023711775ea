"""
Gossip Manager for the PopThread core

Manages the gossip board: short posts with optional expiry, set-based
voting and the newest/popular/controversial listings.
"""

import uuid
import logging
from datetime import timedelta
from typing import List, Optional

from core.clock import Clock
from core.db_manager import DBManager
from core.error_handler import GossipExpiredError, NotFoundError, ValidationError
from core.fanout import RealtimeFanout
from logic.user_manager import UserManager
from logic.votes import VoteTally, apply_vote, controversy, net_score, validate_vote_type
from models.database import Gossip, GossipVote


logger = logging.getLogger(__name__)


GOSSIP_SORTS = ("newest", "popular", "controversial")


def rank_gossips(gossips: List[Gossip], sort: str) -> List[Gossip]:
    """
    Order gossips for display.

    Args:
        gossips: Gossips to order
        sort: newest, popular or controversial

    Returns:
        A new sorted list

    Raises:
        ValidationError: If the sort option is unknown
    """
    if sort not in GOSSIP_SORTS:
        raise ValidationError(f"Unknown sort '{sort}'")

    # Newest first, then each stable sort below layers its primary key on top
    ordered = sorted(gossips, key=lambda g: (g.created_at, g.id), reverse=True)

    if sort == "popular":
        ordered.sort(key=lambda g: (net_score(g.upvotes, g.downvotes), g.upvotes), reverse=True)
    elif sort == "controversial":
        ordered.sort(
            key=lambda g: (controversy(g.upvotes, g.downvotes), g.upvotes + g.downvotes),
            reverse=True,
        )
    return ordered


class GossipManager:
    """
    Manages gossip operations.

    Responsibilities:
    - Create gossips with an optional lifetime
    - List live gossips by newest, popular or controversial
    - Apply up/down/none votes idempotently
    """

    def __init__(
        self,
        db_manager: DBManager,
        fanout: RealtimeFanout,
        clock: Clock,
        user_manager: UserManager,
        max_gossip_length: int = 1000
    ):
        """
        Initialize GossipManager.

        Args:
            db_manager: DBManager instance for database operations
            fanout: RealtimeFanout for refresh notifications
            clock: Authoritative clock
            user_manager: UserManager for author lookups
            max_gossip_length: Longest accepted gossip after trimming
        """
        self.db = db_manager
        self.fanout = fanout
        self.clock = clock
        self.users = user_manager
        self.max_gossip_length = max_gossip_length

    def create_gossip(
        self,
        author_id: str,
        content: str,
        duration_hours: Optional[int] = None
    ) -> Gossip:
        """
        Post a new gossip.

        Args:
            author_id: Posting user
            content: Gossip text, trimmed before storing
            duration_hours: Lifetime in hours; None keeps it until deleted

        Returns:
            Gossip: Created gossip

        Raises:
            ValidationError: If content or duration is invalid
            NotFoundError: If the author does not exist
        """
        content = (content or "").strip()
        if not content:
            raise ValidationError("Gossip cannot be empty")
        if len(content) > self.max_gossip_length:
            raise ValidationError(f"Gossip must be at most {self.max_gossip_length} characters")
        if duration_hours is not None and (not isinstance(duration_hours, int) or duration_hours <= 0):
            raise ValidationError("Duration must be a positive number of hours")

        author = self.users.get_user(author_id)
        now = self.clock.now()

        gossip = Gossip(
            id=str(uuid.uuid4()),
            content=content,
            author_id=author.id,
            author=author.username,
            created_at=now,
            expires_at=now + timedelta(hours=duration_hours) if duration_hours else None,
            last_activity=now,
            votes=[],
            comments=[],
        )

        with self.db.transaction() as session:
            session.add(gossip)

        logger.info(f"Created gossip {gossip.id[:8]} by {author_id[:8]}")
        self.fanout.publish_refresh_gossips()
        return gossip

    def get_gossip(self, gossip_id: str) -> Gossip:
        """
        Raises:
            NotFoundError: If the gossip does not exist
        """
        gossip = self.db.get_gossip_by_id(gossip_id)
        if not gossip:
            raise NotFoundError(f"Gossip {gossip_id[:8]} not found")
        return gossip

    def list_gossips(self, sort: str = "newest") -> List[Gossip]:
        """
        List gossips that have not expired.

        Raises:
            ValidationError: If the sort option is unknown
        """
        if sort not in GOSSIP_SORTS:
            raise ValidationError(f"Unknown sort '{sort}'")
        return rank_gossips(self.db.get_gossips(self.clock.now()), sort)

    def vote_gossip(self, gossip_id: str, user_id: str, vote_type: str) -> VoteTally:
        """
        Set a user's vote on a gossip.

        Args:
            gossip_id: Gossip identifier
            user_id: Voting user
            vote_type: 'up', 'down' or 'none'

        Returns:
            VoteTally: Counts after the vote

        Raises:
            ValidationError: If the vote type is unknown
            NotFoundError: If the gossip does not exist
            GossipExpiredError: If the gossip has expired
        """
        validate_vote_type(vote_type)
        now = self.clock.now()

        with self.db.transaction("gossip", gossip_id) as session:
            gossip = session.get(Gossip, gossip_id)
            if not gossip:
                raise NotFoundError(f"Gossip {gossip_id[:8]} not found")
            if gossip.is_expired(now):
                raise GossipExpiredError(f"Gossip {gossip_id[:8]} has expired")

            tally = apply_vote(session, gossip, GossipVote, user_id, vote_type)

        logger.debug(
            f"Vote '{vote_type}' by {user_id[:8]} on gossip {gossip_id[:8]}: "
            f"+{tally.upvotes}/-{tally.downvotes}"
        )
        self.fanout.publish_refresh_gossips()
        return tally
