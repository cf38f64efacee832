import pytest
from pydantic import ValidationError

from nolto_federation.core.settings import FederationSettings


def test_defaults() -> None:
    settings = FederationSettings()
    assert settings.webfinger_cache_ttl_seconds == 3600
    assert settings.actor_cache_ttl_seconds == 7 * 24 * 3600
    assert settings.queue_partitions == 16
    assert settings.queue_max_attempts == 5
    assert settings.message_encryption_key is None
    assert settings.user_agent == "Nolto-Federation/1.0 (+https://nolto.social)"


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("FEDERATION_LOCAL_DOMAIN", "social.example")
    monkeypatch.setenv("FEDERATION_LOCAL_ACCOUNTS", '["alice", "bob"]')
    monkeypatch.setenv("FEDERATION_QUEUE_PARTITIONS", "4")
    monkeypatch.setenv("FEDERATION_MESSAGE_ENCRYPTION_KEY", "s3cret")

    settings = FederationSettings()
    assert settings.local_domain == "social.example"
    assert settings.local_accounts == ("alice", "bob")
    assert settings.queue_partitions == 4
    assert settings.message_encryption_key.get_secret_value() == "s3cret"
    assert "s3cret" not in repr(settings)


@pytest.mark.parametrize("domain", ["localhost", "nolto.social:8080", "bad domain.social"])
def test_invalid_local_domain_is_rejected(domain) -> None:
    with pytest.raises(ValidationError):
        FederationSettings(local_domain=domain)


@pytest.mark.parametrize(
    "field, value",
    [
        ("queue_partitions", 0),
        ("webfinger_timeout_seconds", 0),
        ("circuit_breaker_threshold", 0),
        ("prometheus_port", 70000),
    ],
)
def test_out_of_range_values_are_rejected(field, value) -> None:
    with pytest.raises(ValidationError):
        FederationSettings(**{field: value})
