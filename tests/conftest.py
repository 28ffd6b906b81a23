import logging

import pytest
import pytest_asyncio

from acmeissuer.client import AcmeClient
from .services import (
    FakeAcmeCA,
    FakeCloudflare,
    FakeGoDaddy,
    FakePorkbun,
    InMemoryDnsProvider,
)

logging.getLogger("acmeissuer").setLevel(logging.DEBUG)


@pytest_asyncio.fixture
async def ca(unused_tcp_port_factory):
    s = FakeAcmeCA(unused_tcp_port_factory())
    await s.run()
    yield s
    await s.shutdown()
    await s.cleanup()


@pytest_asyncio.fixture
async def client(ca):
    c = AcmeClient(
        directory_url=ca.directory_url,
        email="admin@example.com",
        poll_delay=0.01,
        poll_attempts=5,
        backoff=0.01,
    )
    await c.start()
    yield c
    await c.close()


@pytest.fixture
def memory_dns():
    return InMemoryDnsProvider()


@pytest_asyncio.fixture
async def porkbun_api(unused_tcp_port_factory):
    s = FakePorkbun(unused_tcp_port_factory())
    await s.run()
    yield s
    await s.shutdown()
    await s.cleanup()


@pytest_asyncio.fixture
async def godaddy_api(unused_tcp_port_factory):
    s = FakeGoDaddy(unused_tcp_port_factory())
    await s.run()
    yield s
    await s.shutdown()
    await s.cleanup()


@pytest_asyncio.fixture
async def cloudflare_api(unused_tcp_port_factory):
    s = FakeCloudflare(unused_tcp_port_factory())
    await s.run()
    yield s
    await s.shutdown()
    await s.cleanup()
