"""
Application Logic Layer for the PopThread coordinator

This module provides the service managers an HTTP layer calls. Each one
coordinates the entity store, the clock and the realtime fan-out for a
single area of the product.
"""

from logic.user_manager import UserManager
from logic.thread_manager import ThreadManager
from logic.membership_manager import MembershipManager
from logic.chat_manager import ChatManager, ReplyContext
from logic.gossip_manager import GossipManager
from logic.comment_manager import CommentManager, CommentNode, build_comment_tree
from logic.moderation_manager import ModerationManager
from logic.votes import VoteTally

__all__ = [
    'UserManager',
    'ThreadManager',
    'MembershipManager',
    'ChatManager',
    'ReplyContext',
    'GossipManager',
    'CommentManager',
    'CommentNode',
    'build_comment_tree',
    'ModerationManager',
    'VoteTally',
]
