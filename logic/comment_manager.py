"""
Comment Manager for the PopThread core

Manages comments on gossips. Comments are stored flat with an optional
parent link and rebuilt into a reply tree on read.
"""

import uuid
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from core.clock import Clock
from core.db_manager import DBManager
from core.error_handler import (
    GossipExpiredError,
    NotFoundError,
    ParentNotFoundError,
    ValidationError,
)
from core.fanout import RealtimeFanout
from logic.user_manager import UserManager
from logic.votes import VoteTally, apply_vote, validate_vote_type
from models.database import CommentVote, Gossip, GossipComment


logger = logging.getLogger(__name__)


@dataclass
class CommentNode:
    comment: GossipComment
    children: List["CommentNode"] = field(default_factory=list)

    def walk(self):
        """Yield this node's comment and all descendants, depth first."""
        yield self.comment
        for child in self.children:
            yield from child.walk()


def _sibling_key(node: CommentNode):
    return (node.comment.created_at, node.comment.id)


def build_comment_tree(comments: Iterable[GossipComment]) -> List[CommentNode]:
    """
    Rebuild the reply tree from a flat list of comments.

    One pass creates a node per comment, a second attaches each node to its
    parent. A comment whose parent is missing is shown as a root rather
    than dropped. Siblings are ordered by creation time.

    Args:
        comments: Comments of a single gossip, in any order

    Returns:
        List of root CommentNode objects
    """
    nodes: Dict[str, CommentNode] = {c.id: CommentNode(comment=c) for c in comments}
    roots = []

    for node in nodes.values():
        parent_id = node.comment.parent_comment_id
        parent = nodes.get(parent_id) if parent_id else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)

    for node in nodes.values():
        node.children.sort(key=_sibling_key)
    roots.sort(key=_sibling_key)
    return roots


def collect_descendants(comments: Iterable[GossipComment], root_id: str) -> List[str]:
    """Ids of ``root_id`` and every reply beneath it."""
    children: Dict[str, List[str]] = {}
    for comment in comments:
        if comment.parent_comment_id:
            children.setdefault(comment.parent_comment_id, []).append(comment.id)

    found = []
    seen = set()
    stack = [root_id]
    while stack:
        comment_id = stack.pop()
        if comment_id in seen:
            continue
        seen.add(comment_id)
        found.append(comment_id)
        stack.extend(children.get(comment_id, []))
    return found


class CommentManager:
    """
    Manages gossip comments.

    Responsibilities:
    - Add top-level comments and replies to live gossips
    - Apply up/down/none votes on comments
    - Build the nested comment tree for display
    """

    def __init__(
        self,
        db_manager: DBManager,
        fanout: RealtimeFanout,
        clock: Clock,
        user_manager: UserManager,
        max_comment_length: int = 500
    ):
        self.db = db_manager
        self.fanout = fanout
        self.clock = clock
        self.users = user_manager
        self.max_comment_length = max_comment_length

    def add_comment(
        self,
        gossip_id: str,
        author_id: str,
        content: str,
        parent_comment_id: Optional[str] = None,
        reply_to: Optional[str] = None
    ) -> GossipComment:
        """
        Comment on a gossip or reply to one of its comments.

        Args:
            gossip_id: Gossip identifier
            author_id: Commenting user
            content: Comment text, trimmed before storing
            parent_comment_id: Comment being replied to, in the same gossip
            reply_to: Display name being replied to; defaults to the
                parent's author

        Returns:
            GossipComment: Created comment

        Raises:
            ValidationError: If the content is empty or too long
            NotFoundError: If the gossip or author does not exist
            GossipExpiredError: If the gossip has expired
            ParentNotFoundError: If the parent is not a comment of this gossip
        """
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment cannot be empty")
        if len(content) > self.max_comment_length:
            raise ValidationError(f"Comment must be at most {self.max_comment_length} characters")

        author = self.users.get_user(author_id)
        now = self.clock.now()

        with self.db.transaction("gossip", gossip_id) as session:
            gossip = session.get(Gossip, gossip_id)
            if not gossip:
                raise NotFoundError(f"Gossip {gossip_id[:8]} not found")
            if gossip.is_expired(now):
                raise GossipExpiredError(f"Gossip {gossip_id[:8]} has expired")

            parent = None
            if parent_comment_id:
                parent = next((c for c in gossip.comments if c.id == parent_comment_id), None)
                if parent is None:
                    raise ParentNotFoundError(
                        f"Comment {parent_comment_id[:8]} not found on gossip {gossip_id[:8]}"
                    )

            comment = GossipComment(
                id=str(uuid.uuid4()),
                content=content,
                author=author.username,
                author_id=author.id,
                parent_comment_id=parent.id if parent else None,
                reply_to=reply_to or (parent.author if parent else None),
                created_at=now,
                votes=[],
            )
            gossip.comments.append(comment)
            gossip.last_activity = now

        logger.info(
            f"Comment {comment.id[:8]} on gossip {gossip_id[:8]}"
            f"{f' replying to {parent_comment_id[:8]}' if parent_comment_id else ''}"
        )
        self.fanout.publish_refresh_gossips()
        return comment

    def vote_comment(
        self,
        gossip_id: str,
        comment_id: str,
        user_id: str,
        vote_type: str
    ) -> VoteTally:
        """
        Set a user's vote on a comment.

        Raises:
            ValidationError: If the vote type is unknown
            NotFoundError: If the gossip or comment does not exist
            GossipExpiredError: If the gossip has expired
        """
        validate_vote_type(vote_type)
        now = self.clock.now()

        with self.db.transaction("gossip", gossip_id) as session:
            comment = session.get(GossipComment, comment_id)
            if not comment or comment.gossip_id != gossip_id:
                raise NotFoundError(f"Comment {comment_id[:8]} not found")
            if comment.gossip.is_expired(now):
                raise GossipExpiredError(f"Gossip {gossip_id[:8]} has expired")

            tally = apply_vote(session, comment, CommentVote, user_id, vote_type)

        self.fanout.publish_refresh_gossips()
        return tally

    def get_comment_tree(self, gossip_id: str) -> List[CommentNode]:
        """
        Nested comments of a gossip.

        Raises:
            NotFoundError: If the gossip does not exist
        """
        if not self.db.get_gossip_by_id(gossip_id):
            raise NotFoundError(f"Gossip {gossip_id[:8]} not found")
        return build_comment_tree(self.db.get_comments_for_gossip(gossip_id))
