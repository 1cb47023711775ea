"""
Tests for Application Logic Layer

Tests the ThreadManager, MembershipManager and ChatManager.
"""

import threading
import pytest
import tempfile
from pathlib import Path
from datetime import datetime
from sqlalchemy import event

from core.clock import ManualClock
from core.crypto_manager import CryptoManager
from core.db_manager import DBManager
from core.error_handler import (
    AlreadyMemberError,
    AlreadyPendingError,
    EmptyMessageError,
    ForbiddenError,
    NotAMemberError,
    NotFoundError,
    NotPendingError,
    ThreadExpiredError,
    ValidationError,
)
from core.fanout import EventType, RealtimeFanout
from logic.user_manager import UserManager
from logic.thread_manager import ThreadManager, normalize_tags
from logic.membership_manager import MembershipManager
from logic.chat_manager import ChatManager, ReplyContext


DESCRIPTION = "Bring a frisbee and some snacks for everyone"


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield db_path


@pytest.fixture
def db_manager(temp_db):
    """Create and initialize a DBManager instance."""
    db = DBManager(temp_db)
    db.initialize_database()
    yield db
    db.close()


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 6, 1, 12, 0, 0))


@pytest.fixture
def fanout():
    return RealtimeFanout(queue_size=100)


@pytest.fixture
def user_manager(db_manager, clock):
    """UserManager with a cheap Scrypt cost for speed."""
    return UserManager(db_manager, CryptoManager(scrypt_n=2**4), clock)


@pytest.fixture
def thread_manager(db_manager, fanout, clock, user_manager):
    return ThreadManager(db_manager, fanout, clock, user_manager)


@pytest.fixture
def membership_manager(db_manager, fanout, clock, user_manager):
    return MembershipManager(db_manager, fanout, clock, user_manager)


@pytest.fixture
def chat_manager(db_manager, fanout, clock, user_manager):
    return ChatManager(db_manager, fanout, clock, user_manager, reply_preview_length=20)


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
def thread(thread_manager, alice):
    return thread_manager.create_thread(alice.id, "Picnic", DESCRIPTION, "Central Park")


class TestThreadManager:
    """Tests for ThreadManager."""

    def test_create_thread(self, thread_manager, alice, clock):
        """Test creating a thread."""
        thread = thread_manager.create_thread(
            alice.id, "  Picnic  ", DESCRIPTION, "Park", tags="food, Outdoor", category="Social",
            duration_hours=4
        )

        assert thread.title == "Picnic"
        assert thread.creator_id == alice.id
        assert thread.member_ids == [alice.id]
        assert thread.tags == ["Social", "food", "Outdoor"]
        assert thread.created_at == clock.now()
        assert (thread.expires_at - thread.created_at).total_seconds() == 4 * 3600

    def test_create_thread_publishes_refresh(self, thread_manager, fanout, alice):
        subscription = fanout.subscribe()
        thread_manager.create_thread(alice.id, "Picnic", "", "Park")

        events = subscription.drain()
        assert [e.event_type for e in events] == [EventType.REFRESH_THREADS]

    @pytest.mark.parametrize("title,description,location", [
        ("ab", "", "Park"),
        ("Picnic", "too short", "Park"),
        ("Picnic", "", "P"),
    ])
    def test_create_thread_validation(self, thread_manager, alice, title, description, location):
        with pytest.raises(ValidationError):
            thread_manager.create_thread(alice.id, title, description, location)

    def test_create_thread_rejects_unknown_duration(self, thread_manager, alice):
        with pytest.raises(ValidationError):
            thread_manager.create_thread(alice.id, "Picnic", "", "Park", duration_hours=3)

    def test_create_thread_unknown_creator(self, thread_manager):
        with pytest.raises(NotFoundError):
            thread_manager.create_thread("nobody", "Picnic", "", "Park")

    def test_normalize_tags(self):
        assert normalize_tags(["Food", "food", " ", "Music"]) == ["Food", "Music"]
        assert normalize_tags("a,b,A", category="all") == ["a", "b"]
        assert normalize_tags(None, category="Sports") == ["Sports"]

    def test_expired_thread_leaves_listing(self, thread_manager, thread, clock):
        """An expired thread is no longer listed but stays readable."""
        clock.advance(hours=2)
        assert [t.id for t in thread_manager.list_active_threads()] == [thread.id]

        clock.advance(seconds=1)
        assert thread_manager.list_active_threads() == []
        assert thread_manager.get_thread(thread.id).title == "Picnic"

    def test_list_sorts(self, thread_manager, membership_manager, chat_manager, alice, bob, clock):
        first = thread_manager.create_thread(alice.id, "First", "", "Park", duration_hours=8)
        clock.advance(minutes=1)
        second = thread_manager.create_thread(alice.id, "Second", "", "Park", duration_hours=1)

        membership_manager.request_join(first.id, bob.id)
        membership_manager.handle_request(first.id, bob.id, True, alice.id)
        chat_manager.send_message(second.id, alice.id, "hello")

        def ids(sort):
            return [t.id for t in thread_manager.list_active_threads(sort=sort)]

        assert ids("newest") == [second.id, first.id]
        assert ids("oldest") == [first.id, second.id]
        assert ids("mostMembers") == [first.id, second.id]
        assert ids("expiringSoon") == [second.id, first.id]
        assert ids("mostActive") == [second.id, first.id]

        with pytest.raises(ValidationError):
            thread_manager.list_active_threads(sort="random")

    def test_list_category_and_search(self, thread_manager, alice):
        music = thread_manager.create_thread(alice.id, "Jam session", "", "Garage", tags=["Music"])
        thread_manager.create_thread(alice.id, "Pickup game", "", "Court", tags=["Sports"])

        assert [t.id for t in thread_manager.list_active_threads(category="music")] == [music.id]
        assert [t.id for t in thread_manager.list_active_threads(search="GARAGE")] == [music.id]
        assert len(thread_manager.list_active_threads(category="all")) == 2

    def test_update_and_extend(self, thread_manager, thread, alice, clock):
        clock.advance(hours=3)  # already expired
        updated = thread_manager.update_thread(thread.id, alice.id, title="Late picnic", extend_hours=1)

        assert updated.title == "Late picnic"
        assert (updated.expires_at - clock.now()).total_seconds() == 3600
        assert [t.id for t in thread_manager.list_active_threads()] == [thread.id]

    def test_update_requires_owner(self, thread_manager, thread, bob, admin):
        with pytest.raises(ForbiddenError):
            thread_manager.update_thread(thread.id, bob.id, title="Mine now")

        updated = thread_manager.update_thread(thread.id, admin.id, location="Beach")
        assert updated.location == "Beach"

    def test_delete_thread_cascades(self, thread_manager, chat_manager, db_manager, thread, alice, bob):
        chat_manager.send_message(thread.id, alice.id, "bye")

        with pytest.raises(ForbiddenError):
            thread_manager.delete_thread(thread.id, bob.id)

        thread_manager.delete_thread(thread.id, alice.id)

        assert db_manager.get_thread_by_id(thread.id) is None
        assert db_manager.get_messages_for_thread(thread.id) == []
        with pytest.raises(NotFoundError):
            thread_manager.get_thread(thread.id)

    def test_user_insights(self, thread_manager, membership_manager, thread, alice, bob):
        own = thread_manager.create_thread(bob.id, "Bob's thread", "", "Home")
        membership_manager.request_join(thread.id, bob.id)
        membership_manager.handle_request(thread.id, bob.id, True, alice.id)

        insights = thread_manager.get_user_insights(bob.id)
        assert [t.id for t in insights.created_threads] == [own.id]
        assert [t.id for t in insights.joined_threads] == [thread.id]
        assert (insights.stats.created, insights.stats.joined, insights.stats.impact) == (1, 1, 1)

        alice_stats = thread_manager.get_user_insights(alice.id).stats
        assert alice_stats.impact == 2


class TestMembershipManager:
    """Tests for MembershipManager."""

    def test_request_and_approve(self, membership_manager, thread_manager, thread, alice, bob):
        membership_manager.request_join(thread.id, bob.id)
        pending = membership_manager.list_pending(thread.id, alice.id)
        assert [r.user_id for r in pending] == [bob.id]

        updated = membership_manager.handle_request(thread.id, bob.id, True, alice.id)
        assert updated.member_ids == [alice.id, bob.id]
        assert updated.pending_ids == set()

        stored = thread_manager.get_thread(thread.id)
        assert stored.member_ids == [alice.id, bob.id]
        assert stored.pending_ids == set()

    def test_deny_removes_request_only(self, membership_manager, thread_manager, thread, alice, bob):
        membership_manager.request_join(thread.id, bob.id)
        membership_manager.handle_request(thread.id, bob.id, False, alice.id)

        stored = thread_manager.get_thread(thread.id)
        assert stored.member_ids == [alice.id]
        assert stored.pending_ids == set()

        # A denied user may ask again
        membership_manager.request_join(thread.id, bob.id)

    def test_duplicate_request(self, membership_manager, thread, bob):
        membership_manager.request_join(thread.id, bob.id)
        with pytest.raises(AlreadyPendingError):
            membership_manager.request_join(thread.id, bob.id)

    def test_creator_cannot_request(self, membership_manager, thread, alice):
        with pytest.raises(AlreadyMemberError):
            membership_manager.request_join(thread.id, alice.id)

    def test_request_on_expired_thread(self, membership_manager, thread, bob, clock):
        clock.advance(hours=3)
        with pytest.raises(ThreadExpiredError):
            membership_manager.request_join(thread.id, bob.id)

    def test_request_unknown_thread(self, membership_manager, bob):
        with pytest.raises(NotFoundError):
            membership_manager.request_join("missing-thread", bob.id)

    def test_only_creator_or_admin_handles(self, membership_manager, user_manager, thread, bob, admin):
        carol = user_manager.register("carol", "password4")
        membership_manager.request_join(thread.id, bob.id)

        with pytest.raises(ForbiddenError):
            membership_manager.handle_request(thread.id, bob.id, True, carol.id)
        with pytest.raises(ForbiddenError):
            membership_manager.list_pending(thread.id, bob.id)

        membership_manager.handle_request(thread.id, bob.id, True, admin.id)

    def test_handle_without_request(self, membership_manager, thread, alice, bob):
        with pytest.raises(NotPendingError):
            membership_manager.handle_request(thread.id, bob.id, True, alice.id)

    def test_concurrent_approvals_apply_once(self, membership_manager, thread_manager, thread, alice, bob):
        """Two simultaneous approvals produce exactly one transition."""
        membership_manager.request_join(thread.id, bob.id)

        barrier = threading.Barrier(2)
        results = []

        def approve():
            barrier.wait()
            try:
                membership_manager.handle_request(thread.id, bob.id, True, alice.id)
                results.append("ok")
            except NotPendingError:
                results.append("not_pending")

        workers = [threading.Thread(target=approve) for _ in range(2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert sorted(results) == ["not_pending", "ok"]
        assert thread_manager.get_thread(thread.id).member_ids == [alice.id, bob.id]


class TestChatManager:
    """Tests for ChatManager."""

    def test_send_message(self, chat_manager, fanout, thread, alice):
        subscription = fanout.subscribe(thread_ids={thread.id})
        message = chat_manager.send_message(thread.id, alice.id, "  hello  ")

        assert message.message == "hello"
        assert message.user == "alice"
        assert message.sequence_number == 1

        events = subscription.drain()
        assert events[-1].event_type == EventType.NEW_MESSAGE
        assert events[-1].payload["threadId"] == thread.id
        assert events[-1].payload["message"] == "hello"

    def test_messages_keep_append_order(self, chat_manager, thread, alice):
        for i in range(5):
            chat_manager.send_message(thread.id, alice.id, f"message {i}")

        messages = chat_manager.get_messages(thread.id)
        assert [m.message for m in messages] == [f"message {i}" for i in range(5)]
        assert [m.sequence_number for m in messages] == [1, 2, 3, 4, 5]

        later = chat_manager.get_messages(thread.id, after_sequence=3)
        assert [m.sequence_number for m in later] == [4, 5]

    def test_concurrent_senders_get_distinct_sequences(
        self, chat_manager, membership_manager, thread, alice, bob
    ):
        membership_manager.request_join(thread.id, bob.id)
        membership_manager.handle_request(thread.id, bob.id, True, alice.id)

        def send(user_id):
            for i in range(10):
                chat_manager.send_message(thread.id, user_id, f"{user_id[:4]} {i}")

        workers = [threading.Thread(target=send, args=(uid,)) for uid in (alice.id, bob.id)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        sequences = [m.sequence_number for m in chat_manager.get_messages(thread.id)]
        assert sequences == list(range(1, 21))

    def test_non_member_rejected(self, chat_manager, thread, bob):
        with pytest.raises(NotAMemberError):
            chat_manager.send_message(thread.id, bob.id, "let me in")

    def test_pending_user_is_not_member(self, chat_manager, membership_manager, thread, bob):
        membership_manager.request_join(thread.id, bob.id)
        with pytest.raises(NotAMemberError):
            chat_manager.send_message(thread.id, bob.id, "hi")

    def test_expired_thread_rejects_messages(self, chat_manager, thread, alice, clock):
        clock.advance(hours=2, seconds=1)
        with pytest.raises(ThreadExpiredError):
            chat_manager.send_message(thread.id, alice.id, "too late")

    def test_empty_message(self, chat_manager, thread, alice):
        with pytest.raises(EmptyMessageError):
            chat_manager.send_message(thread.id, alice.id, "   ")

    def test_too_long_message(self, chat_manager, thread, alice):
        with pytest.raises(ValidationError):
            chat_manager.send_message(thread.id, alice.id, "x" * 2001)

    def test_unknown_thread(self, chat_manager, alice):
        with pytest.raises(NotFoundError):
            chat_manager.send_message("missing-thread", alice.id, "hi")

    def test_reply_snapshot_from_stored_message(self, chat_manager, thread, alice):
        original = chat_manager.send_message(thread.id, alice.id, "the original message is long")
        reply = chat_manager.send_message(
            thread.id, alice.id, "agreed",
            reply=ReplyContext(message_id=original.id, user="someone else", preview="forged")
        )

        assert reply.reply_to_message_id == original.id
        assert reply.reply_to_user == "alice"
        assert reply.reply_preview == "the original mess..."
        assert len(reply.reply_preview) == 20

    def test_reply_to_unknown_message_keeps_client_snapshot(self, chat_manager, thread, alice):
        reply = chat_manager.send_message(
            thread.id, alice.id, "what?",
            reply=ReplyContext(message_id="gone", user="bob", preview="short")
        )

        assert reply.reply_to_message_id is None
        assert reply.reply_to_user == "bob"
        assert reply.reply_preview == "short"
        assert reply.to_payload()["replyToUser"] == "bob"

    def test_reply_to_message_in_other_thread_is_not_linked(
        self, chat_manager, thread_manager, thread, alice
    ):
        other = thread_manager.create_thread(alice.id, "Other Thread", "", "Library")
        foreign = chat_manager.send_message(other.id, alice.id, "elsewhere")

        reply = chat_manager.send_message(
            thread.id, alice.id, "hm",
            reply=ReplyContext(message_id=foreign.id, user="carol", preview="client text")
        )

        assert reply.reply_to_message_id is None
        assert reply.reply_to_user == "carol"
        assert reply.reply_preview == "client text"

    def test_send_does_not_load_chat_log(self, chat_manager, db_manager, thread, alice):
        """Appending reads the reply target by id, never the whole log."""
        for i in range(5):
            original = chat_manager.send_message(thread.id, alice.id, f"message {i}")

        statements = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(db_manager.engine, "before_cursor_execute", record)
        try:
            reply = chat_manager.send_message(
                thread.id, alice.id, "reply",
                reply=ReplyContext(message_id=original.id, user="x", preview="y")
            )
        finally:
            event.remove(db_manager.engine, "before_cursor_execute", record)

        assert reply.reply_to_message_id == original.id
        assert reply.sequence_number == 6
        assert not [s for s in statements if "thread_messages.thread_id IN" in s]
