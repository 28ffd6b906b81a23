import asyncio
import datetime
import logging

import pydantic
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from acmeissuer.client import (
    AccountKey,
    AcmeClient,
    CouldNotCompleteChallenge,
    Dns01Solver,
    DummySolver,
    Http01Solver,
    PollingTimeout,
    ProtocolError,
    ProviderError,
    Step,
    TransportError,
    ValidationFailure,
)

log = logging.getLogger("acmeissuer.tests.test_client")


def san_of(pem: str):
    cert = x509.load_pem_x509_certificate(pem.encode())
    return cert.extensions.get_extension_for_class(
        x509.SubjectAlternativeName
    ).value.get_values_for_type(x509.DNSName)


def calls_of(provider, operation):
    return [name for op, name, _ in provider.calls if op == operation]


@pytest.fixture
def dns01(ca, memory_dns):
    ca.txt_lookup = memory_dns.txt_values
    return Dns01Solver(memory_dns, propagation_delay=0)


@pytest.mark.asyncio
async def test_obtain_certificate(ca, client):
    bundle = await client.obtain_certificate(
        "example.com", ["www.example.com"], solver=DummySolver()
    )

    assert client.account_url.startswith(ca.url("/acct/"))
    assert bundle.domains == ["example.com", "www.example.com"]
    assert sorted(san_of(bundle.certificate)) == ["example.com", "www.example.com"]
    assert bundle.chain == ca.ca_cert.public_bytes(serialization.Encoding.PEM).decode()
    assert bundle.fullchain == bundle.certificate + bundle.chain

    leaf = x509.load_pem_x509_certificate(bundle.certificate.encode())
    assert bundle.expires_at == leaf.not_valid_after_utc
    assert bundle.expires_at > datetime.datetime.now(datetime.timezone.utc)

    key = serialization.load_pem_private_key(bundle.private_key.encode(), password=None)
    assert AccountKey(key) != client.account_key


@pytest.mark.asyncio
async def test_request_authentication(ca, client):
    await client.obtain_certificate("example.com", solver=DummySolver())

    path, header, payload = ca.signed_requests("/new-account")[0]
    assert "jwk" in header and "kid" not in header
    assert payload["termsOfServiceAgreed"] is True
    assert payload["contact"] == ["mailto:admin@example.com"]

    for path, header, payload in ca.requests[1:]:
        assert header["kid"] == client.account_url
        assert "jwk" not in header

    assert all(payload is None for _, _, payload in ca.signed_requests("/authz/"))
    assert all(payload == {} for _, _, payload in ca.signed_requests("/chall/"))
    # every nonce was handed out by the server and used once
    nonces = [header["nonce"] for _, header, _ in ca.requests]
    assert len(nonces) == len(set(nonces))


@pytest.mark.asyncio
async def test_dns01_two_domains(ca, client, memory_dns, dns01):
    await client.obtain_certificate("example.com", ["www.example.com"], solver=dns01)

    assert calls_of(memory_dns, "upsert") == [
        "_acme-challenge.example.com",
        "_acme-challenge.www.example.com",
    ]
    assert calls_of(memory_dns, "create") == []
    assert sorted(calls_of(memory_dns, "delete")) == [
        "_acme-challenge.example.com",
        "_acme-challenge.www.example.com",
    ]
    assert memory_dns.records == []


@pytest.mark.asyncio
async def test_dns01_wildcard_and_base_domain(ca, client, memory_dns, dns01):
    bundle = await client.obtain_certificate("example.com", ["*.example.com"], solver=dns01)

    assert sorted(san_of(bundle.certificate)) == ["*.example.com", "example.com"]
    # both values live next to each other at the same name
    assert calls_of(memory_dns, "upsert") == ["_acme-challenge.example.com"]
    assert calls_of(memory_dns, "create") == ["_acme-challenge.example.com"]
    assert len(calls_of(memory_dns, "delete")) == 2
    assert memory_dns.records == []


@pytest.mark.asyncio
async def test_http01(ca, client):
    ca.challenge_types = ("http-01",)
    served = {}

    async def publish(artifact):
        served[artifact.path] = artifact.body

    async def unpublish(artifact):
        served.pop(artifact.path, None)

    ca.http_lookup = lambda domain, token: served.get(f"/.well-known/acme-challenge/{token}")

    await client.obtain_certificate("example.com", solver=Http01Solver(publish, unpublish))

    assert served == {}
    assert ca.signed_requests("/chall/")


@pytest.mark.asyncio
async def test_invalid_authorization(ca, client, memory_dns, dns01):
    ca.fail_domains.add("www.example.com")

    with pytest.raises(ValidationFailure) as e:
        await client.obtain_certificate("example.com", ["www.example.com"], solver=dns01)

    assert "DNS problem" in e.value.detail
    assert e.value.step == Step.AUTHORIZATION
    assert not e.value.retryable
    assert "(during authorization)" in str(e.value)
    assert e.value.obj.domain == "www.example.com"

    # not retried
    assert len(ca.signed_requests("/new-order")) == 1
    assert len(ca.signed_requests("/chall/")) == 2
    assert ca.signed_requests("/finalize/") == []

    assert len(calls_of(memory_dns, "delete")) == 2
    assert memory_dns.records == []


@pytest.mark.asyncio
async def test_provider_failure(ca, client, memory_dns, dns01):
    memory_dns.fail_on.add("upsert")

    with pytest.raises(ProviderError) as e:
        await client.obtain_certificate("example.com", solver=dns01)

    assert e.value.provider == "memory"
    assert "upsert refused" in str(e.value)
    assert e.value.step == Step.AUTHORIZATION
    assert ca.signed_requests("/chall/") == []
    assert memory_dns.records == []


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_mask_success(ca, client, memory_dns, dns01):
    memory_dns.fail_on.add("delete")

    bundle = await client.obtain_certificate("example.com", solver=dns01)

    assert bundle.domains == ["example.com"]
    assert calls_of(memory_dns, "delete") == ["_acme-challenge.example.com"]


@pytest.mark.asyncio
async def test_polling_timeout(ca, client):
    ca.stuck_domains.add("example.com")

    with pytest.raises(PollingTimeout) as e:
        await client.obtain_certificate("example.com", solver=DummySolver())

    assert e.value.retryable
    assert e.value.step == Step.AUTHORIZATION
    assert len(ca.signed_requests("/authz/")) == 1 + client.poll_attempts


@pytest.mark.asyncio
async def test_cleanup_on_cancellation(ca, client, memory_dns):
    ca.txt_lookup = memory_dns.txt_values
    solver = Dns01Solver(memory_dns, propagation_delay=30)

    task = asyncio.ensure_future(client.obtain_certificate("example.com", solver=solver))
    while not memory_dns.records:
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert calls_of(memory_dns, "delete") == ["_acme-challenge.example.com"]
    assert memory_dns.records == []


@pytest.mark.asyncio
async def test_cleanup_on_cancellation_while_publishing(ca, client, memory_dns):
    upsert_record = memory_dns.upsert_record

    async def slow_upsert(domain, record):
        # the record is written, but the call has not returned yet
        result = await upsert_record(domain, record)
        await asyncio.sleep(30)
        return result

    memory_dns.upsert_record = slow_upsert
    solver = Dns01Solver(memory_dns, propagation_delay=0)

    task = asyncio.ensure_future(client.obtain_certificate("example.com", solver=solver))
    while not memory_dns.records:
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert calls_of(memory_dns, "delete") == ["_acme-challenge.example.com"]
    assert memory_dns.records == []


@pytest.mark.asyncio
async def test_bad_nonce_is_retried_once(ca, client):
    ca.reject_nonces = 1

    account_url = await client.account_register()

    assert account_url.startswith(ca.url("/acct/"))
    assert ca.reject_nonces == 0
    assert len(ca.signed_requests("/new-account")) == 1


@pytest.mark.asyncio
async def test_bad_nonce_twice(ca, client):
    ca.reject_nonces = 2

    with pytest.raises(ProtocolError) as e:
        await client.account_register()

    assert e.value.code == "badNonce"
    assert e.value.retryable
    assert e.value.step == Step.ACCOUNT_REGISTRATION


@pytest.mark.asyncio
async def test_server_errors_are_retried(ca, client):
    ca.server_errors = 2

    await client.account_register()

    assert ca.server_errors == 0
    assert len(ca.signed_requests("/new-account")) == 1


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries(ca, client):
    ca.server_errors = 10

    with pytest.raises(TransportError) as e:
        await client.account_register()

    assert e.value.retryable
    # one attempt plus three retries
    assert ca.server_errors == 6


@pytest.mark.asyncio
async def test_account_lookup(ca, client):
    with pytest.raises(ProtocolError) as e:
        await client.account_register(only_return_existing=True)
    assert e.value.code == "accountDoesNotExist"
    assert not e.value.retryable

    account_url = await client.account_register()
    assert await client.account_register(only_return_existing=True) == account_url


@pytest.mark.asyncio
async def test_shared_account_key(ca, client):
    account_url = await client.account_register()

    async with AcmeClient(
        directory_url=ca.directory_url, account_key=client.account_key, poll_delay=0.01
    ) as other:
        assert other.account_url is None
        bundle = await other.obtain_certificate("example.com", solver=DummySolver())

        assert other.account_url == account_url
        assert bundle.domains == ["example.com"]


@pytest.mark.asyncio
async def test_parallel_clients(ca):
    async def issue(domain):
        async with AcmeClient(directory_url=ca.directory_url, poll_delay=0.01) as c:
            return await c.obtain_certificate(domain, solver=DummySolver())

    bundles = await asyncio.gather(issue("a.example.com"), issue("b.example.com"))

    assert [b.domains for b in bundles] == [["a.example.com"], ["b.example.com"]]
    assert len(ca.accounts) == 2


@pytest.mark.asyncio
async def test_revoke(ca, client):
    bundle = await client.obtain_certificate("example.com", solver=DummySolver())
    cert = x509.load_pem_x509_certificate(bundle.certificate.encode())

    assert await client.certificate_revoke(cert, reason=4)
    assert ca.revoked == [cert.serial_number]
    assert ca.signed_requests("/revoke-cert")[0][2]["reason"] == 4

    with pytest.raises(ProtocolError) as e:
        await client.certificate_revoke(cert)
    assert e.value.code == "alreadyRevoked"


@pytest.mark.asyncio
async def test_unsolvable_challenges(ca, client, memory_dns):
    ca.challenge_types = ("http-01",)

    with pytest.raises(CouldNotCompleteChallenge) as e:
        await client.obtain_certificate("example.com", solver=Dns01Solver(memory_dns))

    assert e.value.step == Step.AUTHORIZATION
    assert e.value.authorization.identifier == "example.com"
    assert not e.value.retryable

    assert memory_dns.calls == []


@pytest.mark.asyncio
async def test_invalid_arguments(client):
    with pytest.raises(ValueError):
        await client.obtain_certificate("example.com")

    with pytest.raises(ValueError):
        await client.obtain_certificate(
            "example.com", solver=DummySolver(), key=client.account_key.private_key
        )


@pytest.mark.asyncio
async def test_certificate_get_before_finalize(ca, client):
    await client.account_register()
    order = await client.order_create(["example.com"])

    with pytest.raises(ValueError):
        await client.certificate_get(order)


def test_not_started():
    with pytest.raises(RuntimeError):
        AcmeClient().session


@pytest.mark.asyncio
async def test_unreachable_directory(unused_tcp_port_factory):
    c = AcmeClient(
        directory_url=f"http://127.0.0.1:{unused_tcp_port_factory()}/directory",
        transport_retries=1,
        backoff=0.01,
    )
    try:
        with pytest.raises(TransportError):
            await c.start()
    finally:
        await c.close()


def test_poll_attempts_must_be_positive():
    with pytest.raises(ValueError):
        AcmeClient(poll_attempts=0)

    with pytest.raises(pydantic.ValidationError):
        AcmeClient.Config(poll_attempts=0)
