import enum
import typing

import acme.messages


class Step(str, enum.Enum):
    """The steps of a certificate issuance that errors are annotated with."""

    ACCOUNT_REGISTRATION = "account registration"
    ORDER_CREATION = "order creation"
    AUTHORIZATION = "authorization"
    FINALIZE = "finalize"
    DOWNLOAD = "download"


class AcmeClientException(Exception):
    """General ACME client exception."""

    retryable = False
    """Whether the caller may safely retry the whole issuance."""

    def __init__(self, *args, step: typing.Optional[Step] = None):
        super().__init__(*args)
        self.step = step
        """The issuance step at which the error occurred, if known."""

    def __str__(self):
        message = super().__str__()
        if self.step is not None:
            return f"{message} (during {self.step.value})"
        return message


class TransportError(AcmeClientException):
    """Network, DNS or TLS failure while reaching the CA or a DNS backend."""

    retryable = True


class ProtocolError(AcmeClientException):
    """The CA answered with an ACME problem document or an unexpected HTTP status."""

    RETRYABLE_CODES = frozenset(["badNonce", "rateLimited", "serverInternal"])

    def __init__(self, error: acme.messages.Error, status: int = None, **kwargs):
        super().__init__(str(error), **kwargs)
        self.error = error
        """The parsed problem document."""
        self.status = status
        """The HTTP status code of the response."""

    @property
    def code(self) -> typing.Optional[str]:
        """The ACME error code, e.g. *badNonce*, or *None* for non-ACME problem types."""
        return self.error.code

    @property
    def detail(self) -> typing.Optional[str]:
        return self.error.detail

    @property
    def retryable(self) -> bool:
        return self.code in self.RETRYABLE_CODES


class ValidationFailure(AcmeClientException):
    """An authorization or order reached the status *invalid*."""

    def __init__(self, obj, detail: str, **kwargs):
        super().__init__(detail, **kwargs)
        self.obj = obj
        """The authorization or order that became invalid."""
        self.detail = detail
        """The reason reported by the CA."""


class ProviderError(AcmeClientException):
    """A DNS backend rejected the creation, update or deletion of a record."""

    def __init__(self, provider: str, message: str, **kwargs):
        super().__init__(f"{provider}: {message}", **kwargs)
        self.provider = provider
        self.message = message


class PollingTimeout(AcmeClientException):
    """The polling budget was exhausted before the resource reached a terminal state.

    Unlike :class:`ValidationFailure`, the true outcome is unknown.
    """

    retryable = True

    def __init__(self, obj, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.obj = obj


class CouldNotCompleteChallenge(AcmeClientException):
    """The solver cannot complete any of the challenges offered for an authorization."""

    def __init__(self, authorization, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.authorization = authorization
        """The authorization that cannot be completed."""
