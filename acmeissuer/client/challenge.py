import typing
from dataclasses import dataclass

import josepy
from acme import challenges

from acmeissuer.client.keys import AccountKey
from acmeissuer.client.models import Authorization, Challenge, ChallengeType


@dataclass(frozen=True)
class Http01Artifact:
    """The file that the caller has to serve for an *http-01* challenge."""

    domain: str
    path: str
    body: str


@dataclass(frozen=True)
class Dns01Artifact:
    """The TXT record that has to be published for a *dns-01* challenge."""

    domain: str
    record_name: str
    record_value: str


Artifact = typing.Union[Http01Artifact, Dns01Artifact]


def _decode_token(token: str) -> bytes:
    try:
        return josepy.decode_b64jose(token)
    except josepy.DeserializationError as e:
        raise ValueError(f"Token {token} is not base64url encoded") from e


def key_authorization(token: str, account_key: AccountKey) -> str:
    """`8.1. Key Authorizations <https://tools.ietf.org/html/rfc8555#section-8.1>`_"""
    return challenges.HTTP01(token=_decode_token(token)).key_authorization(account_key.key)


def http01_artifact(domain: str, token: str, account_key: AccountKey) -> Http01Artifact:
    chall = challenges.HTTP01(token=_decode_token(token))
    return Http01Artifact(
        domain=domain,
        path=chall.path,
        body=chall.validation(account_key.key),
    )


def dns01_artifact(domain: str, token: str, account_key: AccountKey) -> Dns01Artifact:
    """Computes the TXT record for a *dns-01* challenge.

    The wildcard label is stripped, so *\\*.example.com* and *example.com*
    share the record name *_acme-challenge.example.com*.
    """
    if domain.startswith("*."):
        domain = domain[2:]
    chall = challenges.DNS01(token=_decode_token(token))
    return Dns01Artifact(
        domain=domain,
        record_name=chall.validation_domain_name(domain),
        record_value=chall.validation(account_key.key),
    )


class ChallengeResolver:
    """Turns challenges into the artifacts that prove control over a domain."""

    def __init__(self, account_key: AccountKey):
        self.account_key = account_key

    def resolve(self, authorization: Authorization, challenge: Challenge) -> Artifact:
        """Computes the artifact for the given challenge of the given authorization.

        :raises: :class:`ValueError` If the challenge type is not supported or the challenge
            has no valid token.
        """
        if not challenge.token:
            raise ValueError(f"Challenge {challenge.url} does not carry a token")

        if challenge.type == ChallengeType.DNS_01:
            return dns01_artifact(authorization.domain, challenge.token, self.account_key)
        if challenge.type == ChallengeType.HTTP_01:
            return http01_artifact(authorization.domain, challenge.token, self.account_key)

        raise ValueError(f"Unsupported challenge type {challenge.type}")
