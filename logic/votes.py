"""
Set-based voting shared by gossips and comments.

A user holds at most one vote row per target, so being in both the upvote
and downvote sets is impossible. Applying the same vote twice leaves the
same state behind.
"""

import logging
from dataclasses import dataclass, field
from typing import Set

from sqlalchemy.orm import Session

from core.error_handler import ValidationError
from models.database import VOTE_DOWN, VOTE_UP


logger = logging.getLogger(__name__)

VOTE_NONE = "none"
VOTE_TYPES = (VOTE_UP, VOTE_DOWN, VOTE_NONE)


@dataclass
class VoteTally:
    upvotes: int = 0
    downvotes: int = 0
    upvoted_by: Set[str] = field(default_factory=set)
    downvoted_by: Set[str] = field(default_factory=set)

    @classmethod
    def of(cls, target) -> "VoteTally":
        """Tally the derived vote sets of a gossip or comment."""
        up = target.upvoted_by
        down = target.downvoted_by
        return cls(upvotes=len(up), downvotes=len(down), upvoted_by=up, downvoted_by=down)

    @property
    def net_score(self) -> int:
        return net_score(self.upvotes, self.downvotes)


def validate_vote_type(vote_type: str) -> str:
    if vote_type not in VOTE_TYPES:
        raise ValidationError(f"Vote must be one of {', '.join(VOTE_TYPES)}")
    return vote_type


def apply_vote(session: Session, target, vote_model, user_id: str, vote_type: str) -> VoteTally:
    """
    Set one user's vote on a target loaded in ``session``.

    Args:
        session: Open session the target belongs to
        target: Gossip or GossipComment with a ``votes`` relationship
        vote_model: Row class of that relationship (GossipVote or CommentVote)
        user_id: Voting user
        vote_type: 'up', 'down' or 'none' (clears the vote)

    Returns:
        VoteTally: Counts after the change

    Raises:
        ValidationError: If the vote type is unknown
    """
    validate_vote_type(vote_type)

    existing = next((vote for vote in target.votes if vote.user_id == user_id), None)

    if vote_type == VOTE_NONE:
        if existing is not None:
            target.votes.remove(existing)
    elif existing is not None:
        existing.value = vote_type
    else:
        target.votes.append(vote_model(user_id=user_id, value=vote_type))

    session.flush()
    return VoteTally.of(target)


def net_score(upvotes: int, downvotes: int) -> int:
    return upvotes - downvotes


def controversy(upvotes: int, downvotes: int) -> int:
    """
    High when both sides are large and close to even; zero if either is empty.
    """
    return min(upvotes, downvotes) * (upvotes + downvotes)
