"""API-specific test fixtures."""

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from stacksgate.core.cache import CacheService
from stacksgate.core.config import Settings
from stacksgate.main import create_app
from stacksgate.services.rates import PriceSource, RateOracle

TEST_SOURCE = PriceSource("TestFeed", "https://feed.test/price", lambda data: data["usd"])


@pytest.fixture
def app() -> FastAPI:
    """Fresh application without running the lifespan (no background loops)."""
    return create_app()


@pytest.fixture
def api_client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def memory_settings() -> Settings:
    return Settings(storage_backend="memory", redis_url="", receiver_webhook_secret="whsec_receiver")


@pytest.fixture
def price_feed():
    """Mutable BTC/USD price served to the oracle; set to None to fail the feed."""
    state = {"usd": 65000}

    def handler(request: httpx.Request) -> httpx.Response:
        if state["usd"] is None:
            return httpx.Response(503)
        return httpx.Response(200, json={"usd": state["usd"]})

    state["transport"] = httpx.MockTransport(handler)
    return state


@pytest.fixture
def rate_oracle(price_feed, clock) -> RateOracle:
    return RateOracle(
        CacheService(clock=clock),
        sources=(TEST_SOURCE,),
        transport=price_feed["transport"],
        clock=clock,
    )
