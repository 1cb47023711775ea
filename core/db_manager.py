"""
Database manager for the PopThread core.

This module provides the DBManager class which is the entity store: it
handles database initialization, CRUD operations and queries, transaction
management, per-entity locking and retry of idempotent reads.
"""

import functools
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import create_engine, event, func
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError

from core.error_handler import TransientStoreError
from models.database import (
    Base,
    User,
    Thread,
    ThreadMember,
    ThreadMessage,
    Gossip,
    GossipComment,
    CommentReport,
)


logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    Process-local locks keyed by entity.

    A lock exists only while someone holds or waits for it, so the table
    does not grow with the number of entities ever touched.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, *key) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def active_keys(self) -> List[Tuple]:
        with self._guard:
            return list(self._locks.keys())


def retry_read(method):
    """
    Retry an idempotent read when the store is transiently unavailable.

    Only reads are wrapped; writes surface TransientStoreError immediately
    so a duplicate side effect can never be produced by a silent retry.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        attempt = 0
        while True:
            try:
                return method(self, *args, **kwargs)
            except TransientStoreError as e:
                attempt += 1
                if attempt > self.read_retries:
                    logger.error(f"{method.__name__} failed after {attempt} attempts: {e}")
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"{method.__name__} failed ({e}); retry {attempt}/{self.read_retries} in {delay:.2f}s"
                )
                time.sleep(delay)
    return wrapper


class DBManager:
    """
    Manages database operations for the PopThread core.

    Provides methods for initializing the database, saving and retrieving
    data, and managing transactions with automatic rollback on errors.
    Mutations that must be atomic per entity run inside ``transaction``,
    which holds the entity's lock for the length of one session.
    """

    def __init__(self, db_path: Path, read_retries: int = 2, retry_backoff: float = 0.05):
        """
        Initialize the database manager.

        Args:
            db_path: Path to the SQLite database file
            read_retries: Extra attempts for reads failing with OperationalError
            retry_backoff: Base delay in seconds, doubled per attempt
        """
        self.db_path = db_path
        self.read_retries = read_retries
        self.retry_backoff = retry_backoff
        self.engine = None
        self.SessionLocal = None
        self.locks = KeyedLocks()

    def initialize_database(self):
        """
        Initialize the database by creating the schema if it doesn't exist.

        Creates all tables defined in the models and sets up the session factory.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        db_url = f"sqlite:///{self.db_path}"
        self.engine = create_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30}
        )

        # Enable foreign key constraints for SQLite
        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        Base.metadata.create_all(self.engine)

        # expire_on_commit=False keeps returned (detached) instances readable
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Entity store ready at {self.db_path}")

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Context manager for database sessions with automatic rollback on error.

        Store faults (OperationalError) are re-raised as TransientStoreError;
        every other exception propagates unchanged after the rollback.

        Yields:
            Session: SQLAlchemy session object
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            raise TransientStoreError(f"Entity store unavailable: {e.orig}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self, *lock_key) -> Iterator[Session]:
        """
        Session that runs while holding the lock for ``lock_key``.

        Example:
            with db_manager.transaction("thread", thread_id) as session:
                thread = session.get(Thread, thread_id)
                ...
        """
        if lock_key:
            with self.locks.hold(*lock_key):
                with self.get_session() as session:
                    yield session
        else:
            with self.get_session() as session:
                yield session

    # User operations

    def save_user(self, user: User) -> None:
        """
        Save a user to the database.

        Raises:
            IntegrityError: If the id or username already exists
        """
        with self.get_session() as session:
            session.add(user)

    @retry_read
    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self.get_session() as session:
            user = session.get(User, user_id)
            if user:
                session.expunge(user)
            return user

    @retry_read
    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.get_session() as session:
            user = session.query(User).filter(User.username == username).first()
            if user:
                session.expunge(user)
            return user

    @retry_read
    def get_usernames(self, user_ids: List[str]) -> Dict[str, str]:
        """Map user ids to usernames; unknown ids are omitted."""
        if not user_ids:
            return {}
        with self.get_session() as session:
            rows = session.query(User.id, User.username).filter(User.id.in_(user_ids)).all()
            return {row.id: row.username for row in rows}

    # Thread operations

    @retry_read
    def get_thread_by_id(self, thread_id: str) -> Optional[Thread]:
        """
        Retrieve a thread with its members, requests and chat loaded.

        Args:
            thread_id: Unique thread identifier

        Returns:
            Thread object if found, None otherwise
        """
        with self.get_session() as session:
            thread = session.get(Thread, thread_id)
            if thread:
                session.expunge_all()
            return thread

    @retry_read
    def get_active_threads(self, now: datetime) -> List[Thread]:
        """
        Retrieve threads that have not expired at ``now``.

        Returns:
            List of Thread objects, newest first
        """
        with self.get_session() as session:
            threads = session.query(Thread).filter(
                Thread.expires_at >= now
            ).order_by(Thread.created_at.desc()).all()
            session.expunge_all()
            return threads

    @retry_read
    def get_all_threads(self) -> List[Thread]:
        with self.get_session() as session:
            threads = session.query(Thread).order_by(Thread.created_at.desc()).all()
            session.expunge_all()
            return threads

    @retry_read
    def get_threads_for_user(self, user_id: str) -> Tuple[List[Thread], List[Thread]]:
        """
        Retrieve threads created by and threads joined by a user.

        Returns:
            (created, joined); joined excludes threads the user created
        """
        with self.get_session() as session:
            created = session.query(Thread).filter(
                Thread.creator_id == user_id
            ).order_by(Thread.created_at.desc()).all()
            joined = session.query(Thread).join(ThreadMember).filter(
                ThreadMember.user_id == user_id,
                Thread.creator_id != user_id,
            ).order_by(Thread.created_at.desc()).all()
            session.expunge_all()
            return created, joined

    @retry_read
    def get_expiry_index(self) -> Tuple[List[Tuple[str, datetime]], List[Tuple[str, Optional[datetime]]]]:
        """
        Lightweight (id, expires_at) pairs for every thread and gossip.

        Returns:
            (thread pairs, gossip pairs)
        """
        with self.get_session() as session:
            threads = [(row.id, row.expires_at) for row in session.query(Thread.id, Thread.expires_at)]
            gossips = [(row.id, row.expires_at) for row in session.query(Gossip.id, Gossip.expires_at)]
            return threads, gossips

    # Message operations

    @retry_read
    def get_messages_for_thread(
        self,
        thread_id: str,
        after_sequence: Optional[int] = None
    ) -> List[ThreadMessage]:
        """
        Retrieve a thread's chat in append order.

        Args:
            thread_id: Thread identifier
            after_sequence: Only return messages with a greater sequence number

        Returns:
            List of ThreadMessage objects ordered by sequence number
        """
        with self.get_session() as session:
            query = session.query(ThreadMessage).filter(ThreadMessage.thread_id == thread_id)
            if after_sequence is not None:
                query = query.filter(ThreadMessage.sequence_number > after_sequence)
            messages = query.order_by(ThreadMessage.sequence_number.asc()).all()
            session.expunge_all()
            return messages

    @staticmethod
    def last_sequence_number(session: Session, thread_id: str) -> int:
        """Highest sequence number in a thread's chat, 0 when empty."""
        value = session.query(func.max(ThreadMessage.sequence_number)).filter(
            ThreadMessage.thread_id == thread_id
        ).scalar()
        return value or 0

    # Gossip operations

    @retry_read
    def get_gossip_by_id(self, gossip_id: str) -> Optional[Gossip]:
        with self.get_session() as session:
            gossip = session.get(Gossip, gossip_id)
            if gossip:
                session.expunge_all()
            return gossip

    @retry_read
    def get_gossips(self, now: Optional[datetime] = None) -> List[Gossip]:
        """
        Retrieve gossips, optionally only those still live at ``now``.

        Returns:
            List of Gossip objects, newest first
        """
        with self.get_session() as session:
            query = session.query(Gossip)
            if now is not None:
                query = query.filter((Gossip.expires_at.is_(None)) | (Gossip.expires_at >= now))
            gossips = query.order_by(Gossip.created_at.desc()).all()
            session.expunge_all()
            return gossips

    @retry_read
    def get_comments_for_gossip(self, gossip_id: str) -> List[GossipComment]:
        with self.get_session() as session:
            comments = session.query(GossipComment).filter(
                GossipComment.gossip_id == gossip_id
            ).order_by(GossipComment.created_at.asc()).all()
            session.expunge_all()
            return comments

    # Report operations

    @retry_read
    def get_reports(self) -> List[CommentReport]:
        with self.get_session() as session:
            reports = session.query(CommentReport).order_by(CommentReport.created_at.desc()).all()
            session.expunge_all()
            return reports

    # Aggregates

    @retry_read
    def count(self, model, *criteria) -> int:
        """Count rows of ``model`` matching optional filter criteria."""
        with self.get_session() as session:
            return session.query(func.count()).select_from(model).filter(*criteria).scalar()
