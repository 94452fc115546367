import asyncio

import pytest
from fastapi.testclient import TestClient

from zkgate.config import Settings
from zkgate.errors import UpstreamFetchError
from zkgate.main import create_app
from zkgate.mock_proofs import MockProver

TRUSTED_KEY = "test-trusted-key"
SCOPE = "zkgate-test"


class FakeFetcher:
    """Stands in for the upstream profile service."""

    def __init__(self, delay: float = 0.0):
        self.calls = []
        self.delay = delay
        self.failing = set()

    async def fetch(self, subject_key):
        self.calls.append(subject_key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if subject_key in self.failing:
            raise UpstreamFetchError(f"upstream down for {subject_key}")
        return {"username": subject_key, "fetch": len(self.calls)}


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def settings(tmp_path):
    return Settings(
        scope=SCOPE,
        endpoint="https://relier.example/verify",
        trusted_key=TRUSTED_KEY,
        sign_key="test-sign-key",
        database_url=f"sqlite:///{tmp_path / 'zkgate.db'}",
        minimum_age=18,
        excluded_countries=("PRK", "IRN"),
        ofac=True,
    )


@pytest.fixture
def prover():
    return MockProver(TRUSTED_KEY, SCOPE)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def client(settings, fetcher):
    app = create_app(settings, profile_fetcher=fetcher)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
