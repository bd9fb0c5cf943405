"""In-memory persistence collaborator for accounts, linked identities and feedback.

The edge only relies on the identifiers kept here; a database adapter can
replace these classes as long as it raises ``PersistenceError`` for storage
failures.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import StrEnum

import structlog

from cashheros.errors import PersistenceError

logger = structlog.get_logger()


class Role(StrEnum):
    """Account role."""

    USER = "user"
    ADMIN = "admin"


class DuplicateAccountError(Exception):
    """An account with this email already exists."""


class IdentityConflictError(Exception):
    """A provider identity is already linked to another account."""


@dataclass
class Account:
    id: str
    email: str
    password_hash: str | None = None  # None for provider-only accounts
    first_name: str | None = None
    last_name: str | None = None
    role: Role = Role.USER
    verified: bool = False
    token_version: int = 0
    profile_picture: str | None = None
    created_at: float = field(default_factory=time.time)
    last_login: float | None = None


@dataclass
class Feedback:
    id: str
    subject: str
    message: str
    email: str | None
    account_id: str | None
    created_at: float = field(default_factory=time.time)


class AccountRepository:
    """Accounts keyed by id, with email and provider-identity indexes."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._by_email: dict[str, str] = {}
        self._identities: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def get(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return replace(account) if account else None

    async def get_by_email(self, email: str) -> Account | None:
        account_id = self._by_email.get(email.strip().lower())
        return await self.get(account_id) if account_id else None

    async def create(self, account: Account) -> Account:
        async with self._lock:
            email = account.email.strip().lower()
            if email in self._by_email:
                raise DuplicateAccountError(email)
            if not account.id:
                account.id = uuid.uuid4().hex
            account.email = email
            self._accounts[account.id] = replace(account)
            self._by_email[email] = account.id
        logger.info("account_created", account_id=account.id)
        return replace(account)

    async def save(self, account: Account) -> Account:
        if account.id not in self._accounts:
            raise PersistenceError(f"account {account.id} does not exist")
        self._accounts[account.id] = replace(account)
        return replace(account)

    async def bump_token_version(self, account_id: str) -> int:
        account = self._accounts.get(account_id)
        if account is None:
            raise PersistenceError(f"account {account_id} does not exist")
        account.token_version += 1
        return account.token_version

    async def find_identity(self, provider: str, subject: str) -> Account | None:
        account_id = self._identities.get((provider, subject))
        return await self.get(account_id) if account_id else None

    async def link_identity(self, provider: str, subject: str, account_id: str) -> None:
        """Link a provider identity; one (provider, subject) maps to at most one account."""
        async with self._lock:
            existing = self._identities.get((provider, subject))
            if existing and existing != account_id:
                raise IdentityConflictError(f"{provider}:{subject}")
            if account_id not in self._accounts:
                raise PersistenceError(f"account {account_id} does not exist")
            self._identities[(provider, subject)] = account_id
        logger.info("identity_linked", provider=provider, account_id=account_id)


class FeedbackRepository:
    """Append-only feedback submissions."""

    def __init__(self) -> None:
        self._items: list[Feedback] = []

    async def add(self, subject: str, message: str, email: str | None, account_id: str | None) -> Feedback:
        item = Feedback(
            id=uuid.uuid4().hex,
            subject=subject,
            message=message,
            email=email,
            account_id=account_id,
        )
        self._items.append(item)
        return item

    async def list(self) -> list[Feedback]:
        return list(self._items)


# Singleton instances
_accounts: AccountRepository | None = None
_feedback: FeedbackRepository | None = None


def get_account_repository() -> AccountRepository:
    """Get the account repository singleton."""
    global _accounts
    if _accounts is None:
        _accounts = AccountRepository()
    return _accounts


def get_feedback_repository() -> FeedbackRepository:
    """Get the feedback repository singleton."""
    global _feedback
    if _feedback is None:
        _feedback = FeedbackRepository()
    return _feedback
