import pytest

from cosign_gateway import solana_rpc
from cosign_gateway.solana_rpc import SolanaRpc

from conftest import FakeClock


class StubClient:
    created = []

    def __init__(self, endpoint, commitment=None):
        self.endpoint = endpoint
        self.closed = False
        StubClient.created.append(self)

    async def close(self):
        self.closed = True


@pytest.fixture
def stub(monkeypatch):
    StubClient.created = []
    monkeypatch.setattr(solana_rpc, "AsyncClient", StubClient)
    return StubClient


@pytest.mark.asyncio
async def test_client_is_reused_until_too_old(stub):
    clock = FakeClock(0.0)
    rpc = SolanaRpc("http://rpc.local", max_age_sec=100, clock=clock)
    first = await rpc.client()
    clock.advance(100)
    assert await rpc.client() is first
    clock.advance(1)
    second = await rpc.client()
    assert second is not first and first.closed


@pytest.mark.asyncio
async def test_reset_and_close_drop_the_client(stub):
    rpc = SolanaRpc("http://rpc.local")
    first = await rpc.client()
    await rpc.reset()
    assert first.closed
    assert await rpc.client() is not first
    await rpc.close()
    await rpc.close()
    assert all(c.closed for c in stub.created)
