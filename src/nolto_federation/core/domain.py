from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

MAX_DOMAIN_LENGTH = 253

_DOMAIN_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*"
    r"\.[a-zA-Z]{2,}$"
)


class InvalidHandleError(ValueError):
    """Raised when a string cannot be parsed as ``[acct:]user@domain``."""


@dataclass(frozen=True)
class AccountHandle:
    """A federated account address such as ``alice@example.social``."""

    username: str
    domain: str

    @property
    def acct(self) -> str:
        """Cache key form of the handle; the domain is case-insensitive."""
        return f"{self.username}@{self.domain.lower()}"

    @property
    def resource(self) -> str:
        return f"acct:{self.acct}"


def _parses_as_host(value: str) -> bool:
    try:
        parts = urlsplit(f"https://{value}")
        port = parts.port
    except ValueError:
        return False
    if port is not None or parts.path or parts.query or parts.fragment:
        return False
    if parts.username is not None or parts.password is not None:
        return False
    return parts.hostname is not None and parts.hostname == value.lower()


def is_valid_domain(value: str) -> bool:
    """Return True if ``value`` is a syntactically valid DNS host name.

    The URL parse runs first since it is cheaper and rejects most garbage
    (whitespace, ports, paths, credentials) before the label grammar check.
    """
    if not isinstance(value, str) or not value:
        return False
    if any(ch.isspace() for ch in value):
        return False
    if not _parses_as_host(value):
        return False
    return len(value) <= MAX_DOMAIN_LENGTH and _DOMAIN_PATTERN.match(value) is not None


def parse_account_handle(resource: str) -> AccountHandle:
    """Parse ``user@domain`` or ``acct:user@domain`` into an :class:`AccountHandle`.

    Only the shape is checked here; domain validity is left to
    :func:`is_valid_domain` so callers can report the two failures apart.

    Raises:
        InvalidHandleError: If the resource does not have exactly one ``@``
            separating a non-empty username from a non-empty domain.
    """
    if not isinstance(resource, str):
        raise InvalidHandleError("resource must be a string")
    cleaned = resource.strip()
    if cleaned.startswith("acct:"):
        cleaned = cleaned[len("acct:"):]
    parts = cleaned.split("@")
    if len(parts) != 2:
        raise InvalidHandleError(f"expected user@domain, got {resource!r}")
    username, domain = parts
    if not username or not domain:
        raise InvalidHandleError(f"expected user@domain, got {resource!r}")
    return AccountHandle(username=username, domain=domain)


__all__ = [
    "AccountHandle",
    "InvalidHandleError",
    "MAX_DOMAIN_LENGTH",
    "is_valid_domain",
    "parse_account_handle",
]
