"""
Tests for the gossip board

Tests GossipManager, CommentManager, ModerationManager and the vote
helpers they share.
"""

import threading
import pytest
from datetime import datetime, timedelta
from types import SimpleNamespace

from core.clock import ManualClock
from core.crypto_manager import CryptoManager
from core.db_manager import DBManager
from core.error_handler import (
    ConflictError,
    ForbiddenError,
    GossipExpiredError,
    NotFoundError,
    ParentNotFoundError,
    ValidationError,
)
from core.fanout import EventType, RealtimeFanout
from logic.user_manager import UserManager
from logic.gossip_manager import GossipManager, rank_gossips
from logic.comment_manager import CommentManager, build_comment_tree, collect_descendants
from logic.moderation_manager import ModerationManager
from logic.votes import controversy, net_score


START = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def db_manager(tmp_path):
    """Create and initialize a DBManager instance."""
    db = DBManager(tmp_path / "test.db")
    db.initialize_database()
    yield db
    db.close()


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def fanout():
    return RealtimeFanout(queue_size=100)


@pytest.fixture
def user_manager(db_manager, clock):
    return UserManager(db_manager, CryptoManager(scrypt_n=2**4), clock)


@pytest.fixture
def gossip_manager(db_manager, fanout, clock, user_manager):
    return GossipManager(db_manager, fanout, clock, user_manager, max_gossip_length=50)


@pytest.fixture
def comment_manager(db_manager, fanout, clock, user_manager):
    return CommentManager(db_manager, fanout, clock, user_manager)


@pytest.fixture
def moderation_manager(db_manager, fanout, clock, user_manager):
    return ModerationManager(db_manager, fanout, clock, user_manager)


@pytest.fixture
def alice(user_manager):
    return user_manager.register("alice", "password1")


@pytest.fixture
def bob(user_manager):
    return user_manager.register("bob", "password2")


@pytest.fixture
def admin(user_manager):
    return user_manager.register("root", "password3", is_admin=True)


@pytest.fixture
def gossip(gossip_manager, alice):
    return gossip_manager.create_gossip(alice.id, "Heard the cafe is closing")


def fake_comment(comment_id, parent=None, minute=0):
    return SimpleNamespace(
        id=comment_id,
        parent_comment_id=parent,
        created_at=START + timedelta(minutes=minute),
    )


class TestVoteFormulas:
    """Tests for ranking formulas."""

    def test_net_score(self):
        assert net_score(5, 2) == 3
        assert net_score(0, 4) == -4

    def test_controversy_prefers_even_splits(self):
        assert controversy(5, 5) == 50
        assert controversy(9, 1) == 10
        assert controversy(10, 0) == 0
        assert controversy(5, 5) > controversy(9, 1)


class TestGossipManager:
    """Tests for GossipManager."""

    def test_create_gossip(self, gossip_manager, fanout, alice, clock):
        subscription = fanout.subscribe()
        gossip = gossip_manager.create_gossip(alice.id, "  big news  ", duration_hours=1)

        assert gossip.content == "big news"
        assert gossip.author == "alice"
        assert gossip.expires_at == clock.now() + timedelta(hours=1)
        assert gossip.upvotes == 0
        assert [e.event_type for e in subscription.drain()] == [EventType.REFRESH_GOSSIPS]

    @pytest.mark.parametrize("content", ["", "   ", "x" * 51])
    def test_create_gossip_validation(self, gossip_manager, alice, content):
        with pytest.raises(ValidationError):
            gossip_manager.create_gossip(alice.id, content)

    def test_newest_first_round_trip(self, gossip_manager, alice, clock):
        ids = []
        for i in range(3):
            ids.append(gossip_manager.create_gossip(alice.id, f"gossip {i}").id)
            clock.advance(minutes=1)

        assert [g.id for g in gossip_manager.list_gossips("newest")] == list(reversed(ids))

    def test_expired_gossips_hidden(self, gossip_manager, alice, clock):
        brief = gossip_manager.create_gossip(alice.id, "brief", duration_hours=1)
        lasting = gossip_manager.create_gossip(alice.id, "lasting")

        clock.advance(hours=1, seconds=1)
        assert [g.id for g in gossip_manager.list_gossips()] == [lasting.id]
        assert gossip_manager.get_gossip(brief.id).content == "brief"

        with pytest.raises(GossipExpiredError):
            gossip_manager.vote_gossip(brief.id, alice.id, "up")

    def test_vote_is_idempotent(self, gossip_manager, gossip, bob):
        first = gossip_manager.vote_gossip(gossip.id, bob.id, "up")
        second = gossip_manager.vote_gossip(gossip.id, bob.id, "up")

        assert first == second
        assert second.upvotes == 1
        assert second.upvoted_by == {bob.id}

    def test_vote_switch_is_exclusive(self, gossip_manager, gossip, bob):
        gossip_manager.vote_gossip(gossip.id, bob.id, "up")
        tally = gossip_manager.vote_gossip(gossip.id, bob.id, "down")

        assert tally.upvoted_by == set()
        assert tally.downvoted_by == {bob.id}
        assert (tally.upvotes, tally.downvotes) == (0, 1)

        cleared = gossip_manager.vote_gossip(gossip.id, bob.id, "none")
        assert (cleared.upvotes, cleared.downvotes) == (0, 0)

        stored = gossip_manager.get_gossip(gossip.id)
        assert stored.upvoted_by == set() and stored.downvoted_by == set()

    def test_invalid_vote_type(self, gossip_manager, gossip, bob):
        with pytest.raises(ValidationError):
            gossip_manager.vote_gossip(gossip.id, bob.id, "sideways")

    def test_vote_unknown_gossip(self, gossip_manager, bob):
        with pytest.raises(NotFoundError):
            gossip_manager.vote_gossip("missing", bob.id, "up")

    def test_concurrent_votes_by_same_user(self, gossip_manager, gossip, bob):
        """Racing votes from one user never leave both sets holding them."""
        barrier = threading.Barrier(4)

        def vote(vote_type):
            barrier.wait()
            gossip_manager.vote_gossip(gossip.id, bob.id, vote_type)

        workers = [
            threading.Thread(target=vote, args=(vote_type,))
            for vote_type in ("up", "down", "up", "down")
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        stored = gossip_manager.get_gossip(gossip.id)
        assert stored.upvotes + stored.downvotes == 1
        assert not (stored.upvoted_by & stored.downvoted_by)

    def test_popular_and_controversial_sorts(self, gossip_manager, user_manager, alice, clock):
        voters = [user_manager.register(f"voter{i}", "password").id for i in range(6)]

        loved = gossip_manager.create_gossip(alice.id, "loved")
        clock.advance(minutes=1)
        split = gossip_manager.create_gossip(alice.id, "split")
        clock.advance(minutes=1)
        quiet = gossip_manager.create_gossip(alice.id, "quiet")

        for voter in voters[:4]:
            gossip_manager.vote_gossip(loved.id, voter, "up")
        for voter in voters[:3]:
            gossip_manager.vote_gossip(split.id, voter, "up")
        for voter in voters[3:6]:
            gossip_manager.vote_gossip(split.id, voter, "down")

        popular = [g.id for g in gossip_manager.list_gossips("popular")]
        controversial = [g.id for g in gossip_manager.list_gossips("controversial")]

        assert popular == [loved.id, split.id, quiet.id]
        assert controversial[0] == split.id
        assert controversial[1:] == [loved.id, quiet.id]

        with pytest.raises(ValidationError):
            gossip_manager.list_gossips("hot")

    def test_rank_ties_fall_back_to_newest(self):
        older = SimpleNamespace(id="a", created_at=START, upvotes=1, downvotes=0)
        newer = SimpleNamespace(id="b", created_at=START + timedelta(minutes=1), upvotes=1, downvotes=0)

        assert [g.id for g in rank_gossips([older, newer], "popular")] == ["b", "a"]


class TestCommentTree:
    """Tests for the tree builder."""

    def test_chain(self):
        comments = [fake_comment("C", "B", 2), fake_comment("A", None, 0), fake_comment("B", "A", 1)]
        roots = build_comment_tree(comments)

        assert [r.comment.id for r in roots] == ["A"]
        assert [c.comment.id for c in roots[0].children] == ["B"]
        assert [c.comment.id for c in roots[0].children[0].children] == ["C"]
        assert [c.id for c in roots[0].walk()] == ["A", "B", "C"]

    def test_siblings_sorted_by_time(self):
        comments = [
            fake_comment("late", "root", 5),
            fake_comment("root", None, 0),
            fake_comment("early", "root", 1),
        ]
        roots = build_comment_tree(comments)
        assert [c.comment.id for c in roots[0].children] == ["early", "late"]

    def test_orphans_become_roots(self):
        comments = [fake_comment("A", None, 0), fake_comment("X", "deleted", 1)]
        roots = build_comment_tree(comments)
        assert [r.comment.id for r in roots] == ["A", "X"]

    def test_empty(self):
        assert build_comment_tree([]) == []

    def test_collect_descendants(self):
        comments = [
            fake_comment("A"), fake_comment("B", "A"), fake_comment("C", "B"), fake_comment("D")
        ]
        assert sorted(collect_descendants(comments, "A")) == ["A", "B", "C"]
        assert collect_descendants(comments, "A")[0] == "A"

    def test_collect_descendants_long_chain(self):
        comments = [fake_comment("c0")] + [
            fake_comment(f"c{i}", f"c{i - 1}") for i in range(1, 5000)
        ]
        assert collect_descendants(comments, "c0") == [f"c{i}" for i in range(5000)]

    def test_collect_descendants_visits_each_once(self):
        comments = [fake_comment("X", "Y"), fake_comment("Y", "X")]
        assert collect_descendants(comments, "X") == ["X", "Y"]


class TestCommentManager:
    """Tests for CommentManager."""

    def test_add_comment_and_reply(self, comment_manager, gossip_manager, gossip, alice, bob, clock):
        clock.advance(minutes=1)
        top = comment_manager.add_comment(gossip.id, bob.id, "really?")
        clock.advance(minutes=1)
        reply = comment_manager.add_comment(gossip.id, alice.id, "yes", parent_comment_id=top.id)
        clock.advance(minutes=1)
        nested = comment_manager.add_comment(gossip.id, bob.id, "wow", parent_comment_id=reply.id)

        assert reply.reply_to == "bob"
        assert nested.parent_comment_id == reply.id

        roots = comment_manager.get_comment_tree(gossip.id)
        assert [r.comment.id for r in roots] == [top.id]
        assert [c.id for c in roots[0].walk()] == [top.id, reply.id, nested.id]

        assert gossip_manager.get_gossip(gossip.id).last_activity == clock.now()

    def test_parent_must_exist_in_same_gossip(self, comment_manager, gossip_manager, gossip, alice):
        other = gossip_manager.create_gossip(alice.id, "other")
        foreign = comment_manager.add_comment(other.id, alice.id, "elsewhere")

        with pytest.raises(ParentNotFoundError):
            comment_manager.add_comment(gossip.id, alice.id, "hi", parent_comment_id="nope")
        with pytest.raises(ParentNotFoundError):
            comment_manager.add_comment(gossip.id, alice.id, "hi", parent_comment_id=foreign.id)

    def test_comment_on_expired_gossip(self, comment_manager, gossip_manager, alice, clock):
        brief = gossip_manager.create_gossip(alice.id, "brief", duration_hours=1)
        clock.advance(hours=2)
        with pytest.raises(GossipExpiredError):
            comment_manager.add_comment(brief.id, alice.id, "late")

    def test_empty_comment(self, comment_manager, gossip, alice):
        with pytest.raises(ValidationError):
            comment_manager.add_comment(gossip.id, alice.id, "  ")

    def test_vote_comment(self, comment_manager, gossip, alice, bob):
        comment = comment_manager.add_comment(gossip.id, alice.id, "vote me")

        tally = comment_manager.vote_comment(gossip.id, comment.id, bob.id, "up")
        tally = comment_manager.vote_comment(gossip.id, comment.id, bob.id, "up")
        assert tally.upvotes == 1

        tally = comment_manager.vote_comment(gossip.id, comment.id, bob.id, "down")
        assert (tally.upvotes, tally.downvotes) == (0, 1)

        with pytest.raises(NotFoundError):
            comment_manager.vote_comment("other-gossip", comment.id, bob.id, "up")


class TestModerationManager:
    """Tests for ModerationManager."""

    def test_delete_comment_cascades_replies(
        self, moderation_manager, comment_manager, db_manager, gossip, alice, bob
    ):
        a = comment_manager.add_comment(gossip.id, bob.id, "A")
        b = comment_manager.add_comment(gossip.id, alice.id, "B", parent_comment_id=a.id)
        c = comment_manager.add_comment(gossip.id, bob.id, "C", parent_comment_id=b.id)
        keep = comment_manager.add_comment(gossip.id, alice.id, "keep")
        comment_manager.vote_comment(gossip.id, c.id, alice.id, "up")
        moderation_manager.report_comment(gossip.id, c.id, alice.id, "rude")

        deleted = moderation_manager.delete_comment(gossip.id, a.id, bob.id)

        assert deleted[0] == a.id
        assert sorted(deleted) == sorted([a.id, b.id, c.id])
        remaining = [r.comment.id for r in comment_manager.get_comment_tree(gossip.id)]
        assert remaining == [keep.id]

        # Reports keep their snapshot after the comment is gone
        reports = db_manager.get_reports()
        assert [r.comment_content for r in reports] == ["C"]

    def race_delete_with_vote(self, monkeypatch, module, delete):
        """
        Start ``delete`` on another thread while a vote sits between its
        read and its flush, and report whether the delete had to wait.
        """
        errors = []
        finished = threading.Event()
        waited = []
        real_apply_vote = module.apply_vote

        def run_delete():
            try:
                delete()
            except Exception as e:
                errors.append(e)
            finally:
                finished.set()

        deleter = threading.Thread(target=run_delete)

        def apply_vote_during_delete(*args, **kwargs):
            deleter.start()
            waited.append(not finished.wait(timeout=0.2))
            return real_apply_vote(*args, **kwargs)

        monkeypatch.setattr(module, "apply_vote", apply_vote_during_delete)
        return deleter, errors, waited

    def test_comment_vote_serializes_with_delete(
        self, monkeypatch, moderation_manager, comment_manager, db_manager, gossip, alice, bob
    ):
        import logic.comment_manager as comment_module

        comment = comment_manager.add_comment(gossip.id, alice.id, "going away")
        deleter, errors, waited = self.race_delete_with_vote(
            monkeypatch, comment_module,
            lambda: moderation_manager.delete_comment(gossip.id, comment.id, alice.id),
        )

        tally = comment_manager.vote_comment(gossip.id, comment.id, bob.id, "up")
        deleter.join(timeout=5)

        assert tally.upvotes == 1
        assert waited == [True]
        assert errors == []
        assert db_manager.get_comments_for_gossip(gossip.id) == []

        monkeypatch.undo()
        with pytest.raises(NotFoundError):
            comment_manager.vote_comment(gossip.id, comment.id, bob.id, "down")

    def test_gossip_vote_serializes_with_delete(
        self, monkeypatch, moderation_manager, gossip_manager, gossip, alice, bob
    ):
        import logic.gossip_manager as gossip_module

        deleter, errors, waited = self.race_delete_with_vote(
            monkeypatch, gossip_module,
            lambda: moderation_manager.delete_gossip(gossip.id, alice.id),
        )

        tally = gossip_manager.vote_gossip(gossip.id, bob.id, "up")
        deleter.join(timeout=5)

        assert tally.upvotes == 1
        assert waited == [True]
        assert errors == []

        monkeypatch.undo()
        with pytest.raises(NotFoundError):
            gossip_manager.vote_gossip(gossip.id, bob.id, "down")

    def test_delete_comment_permissions(self, moderation_manager, comment_manager, gossip, alice, bob, admin):
        comment = comment_manager.add_comment(gossip.id, bob.id, "mine")

        with pytest.raises(ForbiddenError):
            moderation_manager.delete_comment(gossip.id, comment.id, alice.id)

        assert moderation_manager.delete_comment(gossip.id, comment.id, admin.id) == [comment.id]

        with pytest.raises(NotFoundError):
            moderation_manager.delete_comment(gossip.id, comment.id, admin.id)

    def test_delete_gossip(self, moderation_manager, gossip_manager, comment_manager, gossip, alice, bob):
        comment_manager.add_comment(gossip.id, bob.id, "hmm")
        gossip_manager.vote_gossip(gossip.id, bob.id, "up")

        with pytest.raises(ForbiddenError):
            moderation_manager.delete_gossip(gossip.id, bob.id)

        moderation_manager.delete_gossip(gossip.id, alice.id)

        with pytest.raises(NotFoundError):
            gossip_manager.get_gossip(gossip.id)
        assert gossip_manager.list_gossips() == []

    def test_report_rules(self, moderation_manager, comment_manager, gossip, alice, bob):
        comment = comment_manager.add_comment(gossip.id, bob.id, "spicy")

        with pytest.raises(ForbiddenError):
            moderation_manager.report_comment(gossip.id, comment.id, bob.id, "self")

        report = moderation_manager.report_comment(gossip.id, comment.id, alice.id, "  mean  ")
        assert report.reason == "mean"
        assert report.comment_author_id == bob.id
        assert report.reporter == "alice"

        with pytest.raises(ConflictError):
            moderation_manager.report_comment(gossip.id, comment.id, alice.id, "again")

        # The comment itself is untouched
        roots = comment_manager.get_comment_tree(gossip.id)
        assert roots[0].comment.content == "spicy"

    def test_admin_views(self, moderation_manager, comment_manager, gossip, alice, bob, admin):
        comment = comment_manager.add_comment(gossip.id, bob.id, "spicy")
        moderation_manager.report_comment(gossip.id, comment.id, alice.id)

        with pytest.raises(ForbiddenError):
            moderation_manager.list_reports(alice.id)
        with pytest.raises(ForbiddenError):
            moderation_manager.get_admin_dashboard(bob.id)

        assert len(moderation_manager.list_reports(admin.id)) == 1

        dashboard = moderation_manager.get_admin_dashboard(admin.id)
        assert dashboard.users == 3
        assert dashboard.gossips == 1
        assert dashboard.comments == 1
        assert dashboard.reports == 1
        assert dashboard.active_threads == 0
