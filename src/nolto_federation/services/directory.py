from __future__ import annotations

import abc
import dataclasses
from typing import Dict, Iterable, Optional


@dataclasses.dataclass(frozen=True)
class LocalAccount:
    """A user of this instance that can be discovered through WebFinger."""

    username: str
    display_name: Optional[str] = None


class LocalAccountDirectory(abc.ABC):
    """Abstract lookup of local accounts.

    The user store lives outside the federation service; implementations
    adapt whatever holds the profiles.
    """

    @abc.abstractmethod
    async def get_account(self, username: str) -> Optional[LocalAccount]:
        """Returns the account named ``username`` (case-insensitive), if any."""
        raise NotImplementedError


class InMemoryAccountDirectory(LocalAccountDirectory):
    """Directory backed by a fixed set of accounts, for tests and small setups."""

    def __init__(self, accounts: Iterable[LocalAccount] = ()) -> None:
        self._accounts: Dict[str, LocalAccount] = {}
        for account in accounts:
            self.add(account)

    @classmethod
    def from_usernames(cls, usernames: Iterable[str]) -> "InMemoryAccountDirectory":
        return cls(LocalAccount(username=name) for name in usernames)

    def add(self, account: LocalAccount) -> None:
        self._accounts[account.username.lower()] = account

    async def get_account(self, username: str) -> Optional[LocalAccount]:
        return self._accounts.get(username.lower())


def actor_url_for(local_domain: str, username: str) -> str:
    return f"https://{local_domain}/actor/{username}"


def profile_url_for(local_domain: str, username: str) -> str:
    return f"https://{local_domain}/@{username}"
