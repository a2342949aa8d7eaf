from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from collegeportal.logging import get_logger
from collegeportal.storage.errors import ConstraintViolation
from collegeportal.storage.models import LOGIN_CATEGORIES, STATUS_ACTIVE, UserRecord

_FIND_BY_EMAIL = {
    "student": (
        "SELECT id, name, email, phone, department_id, class_id, status, password_hash, "
        "created_at, last_login FROM students WHERE LOWER(email) = LOWER(%s) LIMIT 1"
    ),
    "faculty": (
        "SELECT id, name, email, phone, department_id, status, password_hash, created_at "
        "FROM faculty WHERE LOWER(email) = LOWER(%s) LIMIT 1"
    ),
}

# The faculty table has no last_login column; updated_at doubles as the marker.
_RECORD_LAST_LOGIN = {
    "student": "UPDATE students SET last_login = now() WHERE id = %s",
    "faculty": "UPDATE faculty SET updated_at = now() WHERE id = %s",
}

_INSERT_USER = {
    "student": (
        "INSERT INTO students (name, email, phone, department_id, class_id, password_hash, status) "
        "VALUES (%s, %s, %s, %s, %s, %s, %s) "
        "RETURNING id, name, email, phone, department_id, class_id, status, password_hash, created_at"
    ),
    "faculty": (
        "INSERT INTO faculty (name, email, phone, department_id, password_hash, status) "
        "VALUES (%s, %s, %s, %s, %s, %s) "
        "RETURNING id, name, email, phone, department_id, status, password_hash, created_at"
    ),
}


class PostgresStore:
    """Postgres-backed user directory over the existing portal schema."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    def _check_category(self, category: str) -> None:
        if category not in LOGIN_CATEGORIES:
            raise ValueError(f"unknown user category: {category}")

    def _row_to_user(self, category: str, row: Dict[str, Any]) -> UserRecord:
        return UserRecord(
            id=int(row["id"]),
            role=category,
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            status=row.get("status") or STATUS_ACTIVE,
            phone=row.get("phone"),
            department_id=row.get("department_id"),
            class_id=row.get("class_id"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            last_login=row.get("last_login"),
        )

    def find_user_by_email(self, category: str, email: str) -> Optional[UserRecord]:
        self._check_category(category)
        with self._connect() as conn:
            row = conn.execute(_FIND_BY_EMAIL[category], (email.strip(),)).fetchone()
        if not row:
            return None
        return self._row_to_user(category, row)

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
        if category == "student":
            params: tuple = (name, email.strip(), phone, department_id, class_id, password_hash, status)
        else:
            params = (name, email.strip(), phone, department_id, password_hash, status)
        try:
            with self._connect() as conn:
                row = conn.execute(_INSERT_USER[category], params).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email or phone already in use", {"field": "email"}
            ) from exc
        return self._row_to_user(category, row)

    def record_last_login(self, category: str, user_id: int) -> None:
        self._check_category(category)
        with self._connect() as conn:
            conn.execute(_RECORD_LAST_LOGIN[category], (user_id,))

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
