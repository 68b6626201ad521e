from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import google.auth.exceptions
import pytest

from errors import TransportError
from services.token_provider import DEFAULT_TOKEN_LIFETIME_S, GoogleTokenProvider, StaticTokenProvider

SERVICE_ACCOUNT_JSON = json.dumps({"type": "service_account", "client_email": "svc@demo.iam.gserviceaccount.com"})


class FakeCredentials:
    def __init__(self, factory):
        self._factory = factory
        self.token = None
        self.expiry = None

    def refresh(self, _request):
        self._factory.refreshes += 1
        if self._factory.error is not None:
            raise self._factory.error
        self.token = f"token-{self._factory.refreshes}"
        if self._factory.lifetime_s is not None:
            issued = datetime.fromtimestamp(self._factory.clock(), timezone.utc).replace(tzinfo=None)
            self.expiry = issued + timedelta(seconds=self._factory.lifetime_s)


class FakeCredentialsFactory:
    def __init__(self, clock=None, lifetime_s=3600):
        self.clock = clock or Clock()
        self.lifetime_s = lifetime_s
        self.error = None
        self.refreshes = 0
        self.infos = []

    def __call__(self, info):
        self.infos.append(info)
        return FakeCredentials(self)


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _provider(factory, clock, margin=300):
    return GoogleTokenProvider(
        SERVICE_ACCOUNT_JSON,
        clock=clock,
        refresh_margin_s=margin,
        credentials_factory=factory,
    )


def test_token_is_cached_until_refresh_margin():
    clock = Clock()
    factory = FakeCredentialsFactory(clock, lifetime_s=3600)
    provider = _provider(factory, clock)

    first = provider.get_token()
    clock.now += 3000
    second = provider.get_token()

    assert first.token == second.token == "token-1"
    assert factory.refreshes == 1
    assert factory.infos[0]["client_email"] == "svc@demo.iam.gserviceaccount.com"
    assert first.expires_at == 1_000_000.0 + 3600


def test_token_is_refreshed_inside_margin():
    clock = Clock()
    factory = FakeCredentialsFactory(clock, lifetime_s=3600)
    provider = _provider(factory, clock)

    provider.get_token()
    clock.now += 3301
    refreshed = provider.get_token()

    assert refreshed.token == "token-2"
    assert factory.refreshes == 2


def test_refresh_failure_raises_transport_error_and_clears_cache():
    clock = Clock()
    factory = FakeCredentialsFactory(clock, lifetime_s=3600)
    provider = _provider(factory, clock)
    provider.get_token()

    clock.now += 3500
    factory.error = google.auth.exceptions.RefreshError("invalid_grant")
    with pytest.raises(TransportError) as excinfo:
        provider.get_token()
    assert "invalid_grant" in str(excinfo.value)

    factory.error = None
    recovered = provider.get_token()
    assert recovered.token == "token-3"


def test_missing_expiry_uses_default_lifetime():
    clock = Clock()
    factory = FakeCredentialsFactory(clock, lifetime_s=None)
    token = _provider(factory, clock).get_token()
    assert token.expires_at == clock.now + DEFAULT_TOKEN_LIFETIME_S


@pytest.mark.parametrize("credentials_json", ["", "   ", "{not json", "[1, 2]"])
def test_bad_credentials_json_is_a_transport_error(credentials_json):
    factory = FakeCredentialsFactory()
    provider = GoogleTokenProvider(credentials_json, credentials_factory=factory)
    with pytest.raises(TransportError):
        provider.get_token()
    assert factory.refreshes == 0


def test_invalidate_forces_a_new_token():
    clock = Clock()
    factory = FakeCredentialsFactory(clock)
    provider = _provider(factory, clock)
    provider.get_token()
    provider.invalidate()
    assert provider.get_token().token == "token-2"


def test_static_token_provider():
    clock = Clock(now=50.0)
    provider = StaticTokenProvider("preissued", ttl_s=120, clock=clock)
    token = provider.get_token()
    assert token.token == "preissued"
    assert token.expires_at == 170.0
    with pytest.raises(ValueError):
        StaticTokenProvider("")


def test_expiry_is_measured_on_the_injected_clock():
    clock = Clock()
    factory = FakeCredentialsFactory(clock, lifetime_s=600)
    provider = _provider(factory, clock)

    first = provider.get_token()
    assert first.expires_at == clock.now + 600

    clock.now += 299
    assert provider.get_token().token == "token-1"
    clock.now += 2
    refreshed = provider.get_token()
    assert refreshed.token == "token-2"
    assert refreshed.expires_at == clock.now + 600
