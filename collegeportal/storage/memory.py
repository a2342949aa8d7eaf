from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from collegeportal.logging import get_logger
from collegeportal.storage.errors import ConstraintViolation
from collegeportal.storage.models import LOGIN_CATEGORIES, STATUS_ACTIVE, UserRecord


class MemoryStore:
    """In-memory user directory for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Dict[int, UserRecord]] = {
            category: {} for category in LOGIN_CATEGORIES
        }
        self._id_seq: Dict[str, int] = {category: 1 for category in LOGIN_CATEGORIES}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    def _check_category(self, category: str) -> None:
        if category not in self.users:
            raise ValueError(f"unknown user category: {category}")

    def create_user(
        self,
        category: str,
        *,
        name: str,
        email: str,
        password_hash: str,
        status: str = STATUS_ACTIVE,
        phone: Optional[str] = None,
        department_id: Optional[int] = None,
        class_id: Optional[int] = None,
    ) -> UserRecord:
        self._check_category(category)
        normalized = email.strip().lower()
        with self._data_lock:
            table = self.users[category]
            if any(existing.email.lower() == normalized for existing in table.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user_id = self._id_seq[category]
            self._id_seq[category] = user_id + 1
            user = UserRecord(
                id=user_id,
                role=category,
                name=name,
                email=email.strip(),
                password_hash=password_hash,
                status=status,
                phone=phone,
                department_id=department_id,
                class_id=class_id,
            )
            table[user_id] = user
            return user

    def find_user_by_email(self, category: str, email: str) -> Optional[UserRecord]:
        self._check_category(category)
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users[category].values() if u.email.lower() == normalized),
                None,
            )

    def set_user_status(self, category: str, user_id: int, status: str) -> Optional[UserRecord]:
        self._check_category(category)
        with self._data_lock:
            user = self.users[category].get(user_id)
            if not user:
                return None
            user.status = status
            return user

    def record_last_login(self, category: str, user_id: int) -> None:
        self._check_category(category)
        with self._data_lock:
            user = self.users[category].get(user_id)
            if not user:
                self.logger.warning("last_login_user_missing", role=category, user_id=user_id)
                return
            user.last_login = datetime.now(timezone.utc)
