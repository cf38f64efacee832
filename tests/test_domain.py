import pytest

from nolto_federation.core.domain import (
    AccountHandle,
    InvalidHandleError,
    is_valid_domain,
    parse_account_handle,
)


@pytest.mark.parametrize(
    "domain",
    [
        "example.social",
        "mastodon.social",
        "sub.domain.example.co",
        "xn--bcher-kva.example",
        "a-b.example.org",
        "Example.Social",
    ],
)
def test_valid_domains_are_accepted(domain: str) -> None:
    assert is_valid_domain(domain)


@pytest.mark.parametrize(
    "domain",
    [
        "",
        "example .social",
        " example.social",
        "example..social",
        "-example.social",
        "example-.social",
        "example.s",
        "example.123",
        "localhost",
        "example.social:8080",
        "example.social/path",
        "user@example.social",
        "example.social?x=1",
        "example.social#frag",
        "exa_mple.social",
    ],
)
def test_malformed_domains_are_rejected(domain: str) -> None:
    assert not is_valid_domain(domain)


def test_domain_longer_than_253_characters_is_rejected() -> None:
    label = "a" * 60
    domain = ".".join([label] * 5) + ".social"
    assert len(domain) > 253
    assert not is_valid_domain(domain)


def test_non_string_input_is_rejected_without_raising() -> None:
    assert not is_valid_domain(None)  # type: ignore[arg-type]
    assert not is_valid_domain(42)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "resource",
    ["alice@example.social", "acct:alice@example.social", "  acct:alice@example.social "],
)
def test_parse_account_handle_accepts_both_forms(resource: str) -> None:
    handle = parse_account_handle(resource)
    assert handle == AccountHandle(username="alice", domain="example.social")
    assert handle.acct == "alice@example.social"
    assert handle.resource == "acct:alice@example.social"


def test_account_handle_lowercases_domain_in_cache_key() -> None:
    handle = parse_account_handle("Alice@Example.Social")
    assert handle.username == "Alice"
    assert handle.acct == "Alice@example.social"


@pytest.mark.parametrize(
    "resource",
    ["alice", "acct:alice", "@example.social", "alice@", "a@b@example.social", "acct:", ""],
)
def test_parse_account_handle_rejects_malformed_resources(resource: str) -> None:
    with pytest.raises(InvalidHandleError):
        parse_account_handle(resource)
