from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    name: Optional[str] = None


class UserDirectory(Protocol):
    async def find_by_email(self, email: str) -> Optional[UserRecord]: ...


class InMemoryUserDirectory:
    """Account lookup used when no external user store is wired in."""

    def __init__(self, users: Iterable[UserRecord] = ()):
        self._by_email: Dict[str, UserRecord] = {u.email.strip().lower(): u for u in users}

    def add(self, user: UserRecord) -> None:
        self._by_email[user.email.strip().lower()] = user

    async def find_by_email(self, email: str) -> Optional[UserRecord]:
        if not email:
            return None
        return self._by_email.get(email.strip().lower())
