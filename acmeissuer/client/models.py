import datetime
import enum
import logging
import typing
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class OrderStatus(str, enum.Enum):
    # subclassing str simplifies comparison with the raw JSON values
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(str, enum.Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ChallengeStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class ChallengeType(str, enum.Enum):
    """The challenge types that the client knows how to resolve."""

    HTTP_01 = "http-01"
    """See `8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_"""
    DNS_01 = "dns-01"
    """See `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_"""


_ORDER_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.READY: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.VALID: 3,
}

AUTHORIZATION_FAILED = frozenset(
    [
        AuthorizationStatus.INVALID,
        AuthorizationStatus.DEACTIVATED,
        AuthorizationStatus.EXPIRED,
        AuthorizationStatus.REVOKED,
    ]
)
"""Authorization states from which the authorization can never become valid."""


def _error_detail(error: typing.Optional[dict]) -> typing.Optional[str]:
    if not error:
        return None
    return error.get("detail") or error.get("type")


@dataclass
class Challenge:
    """`7.1.5. Challenge Objects <https://tools.ietf.org/html/rfc8555#section-7.1.5>`_"""

    type: str
    url: str
    token: typing.Optional[str]
    status: ChallengeStatus = ChallengeStatus.PENDING
    error: typing.Optional[dict] = None
    """The problem document that the CA attached, if validation failed."""

    @classmethod
    def from_json(cls, obj: dict) -> "Challenge":
        return cls(
            type=obj["type"],
            url=obj["url"],
            token=obj.get("token"),
            status=ChallengeStatus(obj.get("status", "pending")),
            error=obj.get("error"),
        )

    @property
    def error_detail(self) -> typing.Optional[str]:
        return _error_detail(self.error)


@dataclass
class Authorization:
    """`7.1.4. Authorization Objects <https://tools.ietf.org/html/rfc8555#section-7.1.4>`_"""

    url: str
    domain: str
    status: AuthorizationStatus
    challenges: typing.List[Challenge] = field(default_factory=list)
    wildcard: bool = False

    @classmethod
    def from_json(cls, url: str, obj: dict) -> "Authorization":
        return cls(
            url=url,
            domain=obj["identifier"]["value"],
            status=AuthorizationStatus(obj["status"]),
            challenges=[Challenge.from_json(chall) for chall in obj.get("challenges", [])],
            wildcard=obj.get("wildcard", False),
        )

    @property
    def identifier(self) -> str:
        """The name that this authorization proves control over, including the wildcard label."""
        return f"*.{self.domain}" if self.wildcard else self.domain

    @property
    def is_valid(self) -> bool:
        return self.status == AuthorizationStatus.VALID

    @property
    def is_failed(self) -> bool:
        return self.status in AUTHORIZATION_FAILED

    def challenge(self, type_: str) -> typing.Optional[Challenge]:
        """Returns the first challenge of the given type, if the CA offered one."""
        for challenge in self.challenges:
            if challenge.type == type_:
                return challenge
        return None

    def failure_detail(self) -> str:
        """Collects the CA's explanation of why this authorization failed."""
        details = [
            chall.error_detail for chall in self.challenges if chall.error_detail
        ]
        if details:
            return "; ".join(details)
        return f"Authorization for {self.identifier} is {self.status.value}"


@dataclass
class Order:
    """`7.1.3. Order Objects <https://tools.ietf.org/html/rfc8555#section-7.1.3>`_

    The status only ever moves forward. *invalid* may be reached from any state and is terminal.
    """

    url: str
    status: OrderStatus
    identifiers: typing.List[str]
    authorizations: typing.List[str]
    finalize: str
    certificate: typing.Optional[str] = None
    error: typing.Optional[dict] = None

    @classmethod
    def from_json(cls, url: str, obj: dict) -> "Order":
        return cls(
            url=url,
            status=OrderStatus(obj["status"]),
            identifiers=[identifier["value"] for identifier in obj["identifiers"]],
            authorizations=list(obj["authorizations"]),
            finalize=obj["finalize"],
            certificate=obj.get("certificate"),
            error=obj.get("error"),
        )

    @property
    def is_valid(self) -> bool:
        return self.status == OrderStatus.VALID

    @property
    def is_invalid(self) -> bool:
        return self.status == OrderStatus.INVALID

    @property
    def error_detail(self) -> str:
        return _error_detail(self.error) or f"Order {self.url} is invalid"

    def update(self, obj: dict) -> "Order":
        """Applies a freshly fetched representation of the order.

        A status that would move the order backwards is ignored.

        :param obj: The order object as returned by the CA.
        :return: The updated order.
        """
        status = OrderStatus(obj["status"])

        if self.status == OrderStatus.INVALID:
            if status != OrderStatus.INVALID:
                logger.warning(
                    "Order %s is invalid, ignoring reported status %s",
                    self.url,
                    status.value,
                )
        elif status == OrderStatus.INVALID or _ORDER_RANK[status] >= _ORDER_RANK[self.status]:
            self.status = status
        else:
            logger.warning(
                "Ignoring status regression of order %s from %s to %s",
                self.url,
                self.status.value,
                status.value,
            )

        self.authorizations = list(obj.get("authorizations", self.authorizations))
        self.finalize = obj.get("finalize", self.finalize)
        self.certificate = obj.get("certificate") or self.certificate
        self.error = obj.get("error") or self.error
        return self


@dataclass
class CertificateBundle:
    """The result of a successful issuance."""

    certificate: str
    """The leaf certificate as PEM."""
    chain: str
    """The intermediate certificates as concatenated PEM, possibly empty."""
    fullchain: str
    """The leaf followed by the intermediates."""
    private_key: str
    """The PEM-encoded certificate key. Never the account key."""
    expires_at: datetime.datetime
    domains: typing.List[str]
