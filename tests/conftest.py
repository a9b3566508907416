"""Shared fixtures: signing keys, a temporary license store and a fake clock."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from trialgate.config import LimitsConfig, PolicyConfig, SigningConfig, reset_settings
from trialgate.licensing.keys import generate_key_pair
from trialgate.licensing.token import TokenCodec
from trialgate.storage.sql_store import SQLLicenseStore


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _reset():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(scope="session")
def key_pair() -> tuple[str, str]:
    return generate_key_pair()


@pytest.fixture
def signing_config(key_pair) -> SigningConfig:
    private_pem, public_pem = key_pair
    return SigningConfig(private_key=private_pem, public_key=public_pem)


@pytest.fixture
def codec(signing_config) -> TokenCodec:
    return TokenCodec.for_server(signing_config)


@pytest.fixture
def client_codec(signing_config) -> TokenCodec:
    return TokenCodec.for_client(SigningConfig(public_key=signing_config.public_key))


@pytest.fixture
def limits() -> LimitsConfig:
    return LimitsConfig()


@pytest.fixture
def policy() -> PolicyConfig:
    return PolicyConfig(latest_version="1.2.0", trial_days=30, token_expiry_days=30)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
async def store(tmp_path):
    s = SQLLicenseStore()
    await s.init(f"sqlite+aiosqlite:///{tmp_path / 'license.db'}")
    yield s
    await s.close()
