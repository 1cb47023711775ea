"""
User Manager for the PopThread core

Manages account registration, password authentication and lookup.
Session and token issuance belong to the HTTP layer.
"""

import re
import uuid
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from core.clock import Clock
from core.crypto_manager import CryptoManager, PasswordCredential
from core.db_manager import DBManager
from core.error_handler import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models.database import User


logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")


class UserManager:
    """
    Manages user accounts.

    Responsibilities:
    - Register users with hashed password credentials
    - Authenticate username/password pairs
    - Look up users and admin status
    """

    def __init__(
        self,
        db_manager: DBManager,
        crypto_manager: CryptoManager,
        clock: Clock,
        min_password_length: int = 6
    ):
        self.db = db_manager
        self.crypto = crypto_manager
        self.clock = clock
        self.min_password_length = min_password_length

    def register(self, username: str, password: str, is_admin: bool = False) -> User:
        """
        Create a new account.

        Args:
            username: 3-32 characters of letters, digits, '_', '.', '-'
            password: Plaintext password
            is_admin: Grant admin rights

        Returns:
            User: Created user

        Raises:
            ValidationError: If username or password is invalid
            ConflictError: If the username is taken
        """
        username = (username or "").strip()
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username must be 3-32 characters of letters, digits, '_', '.' or '-'"
            )
        if not password or len(password) < self.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.min_password_length} characters"
            )

        credential = self.crypto.hash_password(password)
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            is_admin=is_admin,
            password_hash=credential.password_hash,
            password_salt=credential.salt,
            created_at=self.clock.now(),
        )

        try:
            self.db.save_user(user)
        except IntegrityError:
            raise ConflictError(f"Username '{username}' is already taken")

        logger.info(f"Registered user {user.id[:8]} ({username}{', admin' if is_admin else ''})")
        return user

    def authenticate(self, username: str, password: str) -> User:
        """
        Verify a username/password pair.

        Returns:
            User: The authenticated user

        Raises:
            ForbiddenError: If the username is unknown or the password is wrong
        """
        user = self.db.get_user_by_username((username or "").strip())
        credential = None
        if user:
            credential = PasswordCredential(user.password_hash, user.password_salt)

        if not user or not self.crypto.verify_password(password or "", credential):
            logger.info(f"Failed login for '{username}'")
            raise ForbiddenError("Invalid username or password")

        return user

    def get_user(self, user_id: str) -> User:
        """
        Raises:
            NotFoundError: If the user does not exist
        """
        user = self.db.get_user_by_id(user_id)
        if not user:
            raise NotFoundError(f"User {user_id[:8]} not found")
        return user

    def find_user(self, user_id: str) -> Optional[User]:
        return self.db.get_user_by_id(user_id)

    def is_admin(self, user_id: str) -> bool:
        user = self.db.get_user_by_id(user_id)
        return bool(user and user.is_admin)
