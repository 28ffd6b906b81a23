import hashlib

import josepy
import pytest

from acmeissuer.client import AccountKey, ChallengeResolver, Dns01Artifact, Http01Artifact
from acmeissuer.client.challenge import dns01_artifact, http01_artifact, key_authorization
from acmeissuer.client.models import Authorization, AuthorizationStatus, Challenge
from .services import jwk_thumbprint

TOKEN = "evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA"
OTHER_TOKEN = "DGyRejmCefe7v4NfDGDKfA"
ACCOUNT_KEY = AccountKey.generate()
THUMBPRINT = jwk_thumbprint(ACCOUNT_KEY.jwk())


def authorization(domain, wildcard=False, challenges=()):
    return Authorization(
        url="https://ca.test/authz/1",
        domain=domain,
        status=AuthorizationStatus.PENDING,
        challenges=list(challenges),
        wildcard=wildcard,
    )


def test_key_authorization():
    assert key_authorization(TOKEN, ACCOUNT_KEY) == f"{TOKEN}.{THUMBPRINT}"


def test_dns01_artifact():
    artifact = dns01_artifact("www.example.com", TOKEN, ACCOUNT_KEY)

    expected = josepy.encode_b64jose(hashlib.sha256(f"{TOKEN}.{THUMBPRINT}".encode()).digest())
    assert artifact == Dns01Artifact(
        domain="www.example.com",
        record_name="_acme-challenge.www.example.com",
        record_value=expected,
    )
    assert "=" not in artifact.record_value
    assert len(artifact.record_value) == 43


def test_dns01_wildcard_shares_record_name():
    wildcard = dns01_artifact("*.example.com", TOKEN, ACCOUNT_KEY)
    base = dns01_artifact("example.com", OTHER_TOKEN, ACCOUNT_KEY)

    assert wildcard.domain == "example.com"
    assert wildcard.record_name == base.record_name == "_acme-challenge.example.com"
    assert wildcard.record_value != base.record_value


def test_http01_artifact():
    artifact = http01_artifact("example.com", TOKEN, ACCOUNT_KEY)

    assert artifact == Http01Artifact(
        domain="example.com",
        path=f"/.well-known/acme-challenge/{TOKEN}",
        body=f"{TOKEN}.{THUMBPRINT}",
    )


def test_resolver():
    resolver = ChallengeResolver(ACCOUNT_KEY)
    dns01 = Challenge(type="dns-01", url="https://ca.test/chall/1", token=TOKEN)
    http01 = Challenge(type="http-01", url="https://ca.test/chall/2", token=TOKEN)
    authz = authorization("example.com", wildcard=True, challenges=[dns01])

    assert resolver.resolve(authz, dns01) == dns01_artifact("example.com", TOKEN, ACCOUNT_KEY)
    assert isinstance(resolver.resolve(authz, http01), Http01Artifact)
    assert authz.identifier == "*.example.com"


@pytest.mark.parametrize(
    "challenge",
    [
        Challenge(type="tls-alpn-01", url="https://ca.test/chall/1", token=TOKEN),
        Challenge(type="dns-01", url="https://ca.test/chall/1", token=None),
    ],
    ids=["unsupported", "no-token"],
)
def test_resolver_rejects(challenge):
    with pytest.raises(ValueError):
        ChallengeResolver(ACCOUNT_KEY).resolve(authorization("example.com"), challenge)


def test_resolver_rejects_malformed_token():
    challenge = Challenge(type="dns-01", url="https://ca.test/chall/1", token="x")

    with pytest.raises(ValueError):
        ChallengeResolver(ACCOUNT_KEY).resolve(authorization("example.com"), challenge)
