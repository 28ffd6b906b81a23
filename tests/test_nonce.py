import aiohttp
import pytest
import pytest_asyncio

from acmeissuer.client import TransportError
from acmeissuer.client.nonce import NonceSource


@pytest_asyncio.fixture
async def http():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.mark.asyncio
async def test_fetch_from_server(ca, http):
    nonces = NonceSource(http)

    first = await nonces.fetch(ca.url("/new-nonce"))
    second = await nonces.fetch(ca.url("/new-nonce"))

    assert first != second
    assert ca.nonce_requests == 2
    assert nonces.is_consumed(first)
    assert nonces.is_consumed(second)


@pytest.mark.asyncio
async def test_cached_nonce_is_used_first(ca, http):
    nonces = NonceSource(http)
    nonces.add("from-response")

    assert len(nonces) == 1
    assert await nonces.fetch(ca.url("/new-nonce")) == "from-response"
    assert ca.nonce_requests == 0
    assert len(nonces) == 0


@pytest.mark.asyncio
async def test_consumed_nonce_is_not_cached_again(ca, http):
    nonces = NonceSource(http)
    nonces.add("n1")
    nonce = await nonces.fetch(ca.url("/new-nonce"))

    nonces.add(nonce)
    nonces.add(None)
    nonces.add("n2")
    nonces.add("n2")

    assert len(nonces) == 1
    assert await nonces.fetch(ca.url("/new-nonce")) == "n2"


@pytest.mark.asyncio
async def test_missing_nonce_header(ca, http):
    nonces = NonceSource(http)

    with pytest.raises(TransportError):
        await nonces.fetch(ca.url("/directory"))


@pytest.mark.asyncio
async def test_unreachable_server(unused_tcp_port_factory, http):
    nonces = NonceSource(http)

    with pytest.raises(TransportError) as e:
        await nonces.fetch(f"http://127.0.0.1:{unused_tcp_port_factory()}/new-nonce")

    assert e.value.retryable
