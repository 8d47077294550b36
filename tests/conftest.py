"""Shared fixtures: a scripted completion gateway behind httpx.MockTransport."""

import httpx
import pytest

from dualchat.llm import CompletionClient
from tests.helpers import GATEWAY_URL, FakeGateway


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def client(gateway):
    """CompletionClient wired to the fake gateway."""
    async with CompletionClient(gateway_url=GATEWAY_URL, transport=httpx.MockTransport(gateway.handler)) as c:
        yield c
