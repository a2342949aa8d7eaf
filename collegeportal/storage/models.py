from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Categories searched at sign-in, in lookup order. The first match wins; an
# email present in both tables always resolves to the student record.
LOGIN_CATEGORIES: tuple[str, ...] = ("student", "faculty")

STATUS_ACTIVE = "ACTIVE"
STATUS_INACTIVE = "INACTIVE"


@dataclass
class UserRecord:
    id: int
    role: str
    name: str
    email: str
    password_hash: str
    status: str = STATUS_ACTIVE
    phone: Optional[str] = None
    department_id: Optional[int] = None
    class_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_login: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass(frozen=True)
class Identity:
    """Snapshot of a resolved user, carried through the OTP exchange."""

    role: str
    user_id: int
    display_name: str
    login_identifier: str

    def summary(self) -> dict:
        return {
            "id": self.user_id,
            "username": self.login_identifier,
            "role": self.role,
            "name": self.display_name,
        }
