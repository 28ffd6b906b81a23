import abc
import enum
import logging
import typing
from dataclasses import dataclass, field

import aiohttp
from pydantic_settings import BaseSettings

from acmeissuer.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class DnsRecordType(str, enum.Enum):
    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"
    TXT = "TXT"
    MX = "MX"
    NS = "NS"
    SRV = "SRV"
    CAA = "CAA"


@dataclass
class DnsRecord:
    """A single resource record.

    *name* is the fully qualified record name, with or without a trailing dot.
    """

    name: str
    type: str
    content: str
    ttl: typing.Optional[int] = None
    priority: typing.Optional[int] = None
    """Only meaningful for MX and SRV records."""
    id: typing.Optional[str] = field(default=None, compare=False)
    """The backend's identifier for the record, if it has one."""

    def __post_init__(self):
        if isinstance(self.type, DnsRecordType):
            self.type = self.type.value

    def matches(self, other: "DnsRecord") -> bool:
        """Whether both records have the same name, type and content."""
        return (
            _clean(self.name) == _clean(other.name)
            and self.type == other.type
            and self.content == other.content
        )


@dataclass
class CreateRecordResult:
    success: bool
    id: typing.Optional[str] = None
    message: typing.Optional[str] = None


@dataclass
class DeleteRecordResult:
    success: bool
    message: typing.Optional[str] = None


@dataclass
class ListRecordsResult:
    success: bool
    records: typing.List[DnsRecord] = field(default_factory=list)
    message: typing.Optional[str] = None


RECORD_NOT_FOUND = "Record not found"


class DnsApiError(Exception):
    """A DNS backend's API rejected a request."""

    def __init__(self, provider: str, message: str, status: int = None):
        super().__init__(f"{provider} API error: {message}")
        self.provider = provider
        self.status = status


def _clean(name: str) -> str:
    return name.rstrip(".").lower()


def root_domain(domain: str) -> str:
    """Returns the registrable domain, approximated by the last two labels.

    *api.example.com* becomes *example.com*. Multi-label public suffixes such as
    *co.uk* are not recognized.
    """
    parts = domain.rstrip(".").split(".")
    if len(parts) >= 2:
        return ".".join(parts[-2:])
    return domain.rstrip(".")


def relative_name(name: str, zone: str, apex: str = "") -> str:
    """Expresses a record name relative to the given zone.

    :param name: The fully qualified record name.
    :param zone: The zone, e.g. *example.com*.
    :param apex: How the backend denotes the zone apex, e.g. *@* or the empty string.
    :return: The relative name, e.g. *_acme-challenge* for *_acme-challenge.example.com*.
        Names outside of the zone are returned unchanged.
    """
    name = name.rstrip(".")
    zone = zone.rstrip(".")

    if name.lower() == zone.lower():
        return apex
    if name.lower().endswith(f".{zone.lower()}"):
        return name[: -(len(zone) + 1)]
    return name


def fqdn(name: str, zone: str, trailing_dot: bool = False) -> str:
    """Expands a possibly relative record name into a fully qualified one.

    The empty name and *@* denote the zone apex.
    """
    name = name.rstrip(".")
    zone = zone.rstrip(".")

    if not name or name == "@" or name.lower() == zone.lower():
        full = zone
    elif name.lower().endswith(f".{zone.lower()}"):
        full = name
    else:
        full = f"{name}.{zone}"

    return f"{full}." if trailing_dot else full


class DnsProvider(abc.ABC):
    """An abstract base class for DNS backends.

    Implementations are registered with the plugin registry via
    :meth:`~acmeissuer.plugin_base.PluginRegistry.register_plugin`, so that a configuration's
    *type* selects the backend.

    Record operations never raise for backend failures. Instead, they return a result
    object whose *success* is *False* and whose *message* describes the failure.
    """

    name: str = "none"
    """The backend's name, used in logs and errors."""

    PROPAGATION_DELAY: float = 60.0
    """Default time in seconds until a change is visible to the CA's resolvers."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"
        propagation_delay: typing.Optional[float] = None
        """overrides the backend's default propagation delay in seconds"""

    def __init__(self, cfg: Config):
        self.propagation_delay: float = (
            cfg.propagation_delay
            if cfg.propagation_delay is not None
            else self.PROPAGATION_DELAY
        )

    @abc.abstractmethod
    async def create_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        """Adds a record, keeping all existing records of the same name and type.

        :param domain: The domain whose zone contains the record.
        :param record: The record to add.
        """
        pass

    @abc.abstractmethod
    async def upsert_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        """Creates a record or replaces the existing record of the same name and type.

        Repeating an upsert with the same content leaves the zone unchanged.

        :param domain: The domain whose zone contains the record.
        :param record: The record to create or update.
        """
        pass

    @abc.abstractmethod
    async def delete_record(
        self, domain: str, record: DnsRecord
    ) -> DeleteRecordResult:
        """Deletes the record that matches the given name, type and content.

        Other records of the same name and type are kept.
        If there is no such record, the result is unsuccessful with the message *Record not found*.

        :param domain: The domain whose zone contains the record.
        :param record: The record to delete.
        """
        pass

    @abc.abstractmethod
    async def list_records(
        self, domain: str, type_: typing.Optional[str] = None
    ) -> ListRecordsResult:
        """Lists the records of the domain's zone, optionally filtered by type."""
        pass

    @abc.abstractmethod
    async def can_manage_domain(self, domain: str) -> bool:
        """Checks whether the backend's credentials give access to the domain's zone.

        This does not modify the zone. Any backend error yields *False*.
        """
        pass

    async def close(self) -> None:
        """Releases the resources held by the provider."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class HttpDnsProvider(DnsProvider):
    """Base class for backends that are driven through a REST API."""

    DEFAULT_TTL = 600

    def __init__(self, cfg: DnsProvider.Config):
        super().__init__(cfg)
        self._http: typing.Optional[aiohttp.ClientSession] = None

    @property
    def http(self) -> aiohttp.ClientSession:
        """The provider's HTTP session, which is created on first use."""
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30)
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None

    def _failure(self, operation: str, record_name: str, e: Exception) -> str:
        logger.exception(
            "%s: could not %s %s", self.name, operation, record_name, exc_info=e
        )
        return str(e)


PluginRegistry.get_registry(DnsProvider)
