import abc
import asyncio
import contextlib
import logging
import typing

import dns.asyncresolver
import dns.exception
from pydantic import Field
from pydantic_settings import BaseSettings

from acmeissuer.client.challenge import Artifact, Dns01Artifact, Http01Artifact
from acmeissuer.client.exceptions import ProviderError
from acmeissuer.client.models import ChallengeType
from acmeissuer.dns import (
    DnsProvider,
    DnsProviderConfig,
    DnsRecord,
    DnsRecordType,
    create_dns_provider,
)
from acmeissuer.dns.base import RECORD_NOT_FOUND
from acmeissuer.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class ChallengeSolver(abc.ABC):
    """An abstract base class for challenge solvers.

    A solver publishes the artifact that proves control over a domain and removes it again afterwards.
    All implementations must implement the methods :meth:`complete_challenge` and
    :meth:`cleanup_challenge`.
    Implementations that can be set up from a config file are registered with the plugin registry via
    :meth:`~acmeissuer.plugin_base.PluginRegistry.register_plugin`.
    """

    SUPPORTED_CHALLENGES: typing.Iterable[ChallengeType]
    """The types of challenges that the challenge solver implementation supports."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    propagation_delay: float = 0.0
    """Time in seconds to wait after publishing before the CA may validate."""

    @classmethod
    def from_config(cls, cfg: Config) -> "ChallengeSolver":
        return cls()

    @abc.abstractmethod
    async def complete_challenge(self, artifact: Artifact) -> None:
        """Publishes the given artifact.

        :param artifact: The artifact computed from the challenge.
        :raises: :class:`~acmeissuer.client.exceptions.ProviderError` If the artifact could not be published.
        """
        pass

    @abc.abstractmethod
    async def cleanup_challenge(self, artifact: Artifact) -> None:
        """Removes the given artifact.

        This method is called regardless of the outcome of the validation and must not assume
        that the artifact was actually published.

        :param artifact: The artifact to remove.
        """
        pass

    async def wait_for_propagation(self, artifacts: typing.List[Artifact]) -> None:
        """Delays until the published artifacts are visible to the CA."""
        if self.propagation_delay > 0:
            logger.debug("Waiting %.1fs for propagation", self.propagation_delay)
            await asyncio.sleep(self.propagation_delay)


@PluginRegistry.register_plugin("dns01")
class Dns01Solver(ChallengeSolver):
    """Solves *dns-01* challenges by publishing TXT records through a :class:`~acmeissuer.dns.DnsProvider`.

    The first value at a record name replaces whatever is there. Further values at the same name,
    e.g. for *example.com* and *\\*.example.com* in one order, are added next to it.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])
    """The types of challenges that the solver supports."""

    RECORD_TTL = 60

    POLLING_DELAY = 5.0
    """Time in seconds between consecutive DNS queries when verifying propagation."""

    POLLING_TIMEOUT = 300.0
    """Time in seconds after which a TXT record that is not visible is considered failed."""

    DEFAULT_DNS_SERVERS = ["1.1.1.1", "8.8.8.8"]
    """The DNS servers to query if none are specified during initialization."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["dns01"] = "dns01"
        provider: DnsProviderConfig
        propagation_delay: typing.Optional[float] = None
        """seconds to wait after publishing, defaults to the provider's delay"""
        verify_propagation: bool = False
        """query public resolvers until the TXT records are visible"""
        dns_servers: typing.List[str] = Field(default_factory=list)

    def __init__(
        self,
        provider: DnsProvider,
        *,
        propagation_delay: float = None,
        verify_propagation: bool = False,
        dns_servers: typing.List[str] = None,
    ):
        self.provider = provider
        self.propagation_delay = (
            propagation_delay
            if propagation_delay is not None
            else provider.propagation_delay
        )
        self.verify_propagation = verify_propagation
        self.dns_servers = dns_servers or self.DEFAULT_DNS_SERVERS

        self._published: typing.Dict[str, typing.List[str]] = {}

    @classmethod
    def from_config(cls, cfg: Config) -> "Dns01Solver":
        return cls(
            create_dns_provider(cfg.provider),
            propagation_delay=cfg.propagation_delay,
            verify_propagation=cfg.verify_propagation,
            dns_servers=cfg.dns_servers,
        )

    def _record(self, artifact: Dns01Artifact) -> DnsRecord:
        return DnsRecord(
            name=artifact.record_name,
            type=DnsRecordType.TXT,
            content=artifact.record_value,
            ttl=self.RECORD_TTL,
        )

    async def complete_challenge(self, artifact: Dns01Artifact) -> None:
        """Publishes the TXT record of the given artifact.

        :param artifact: The *dns-01* artifact.
        :raises: :class:`~acmeissuer.client.exceptions.ProviderError` If the provider did not accept the record.
        """
        record = self._record(artifact)
        values = self._published.setdefault(artifact.record_name, [])

        if artifact.record_value in values:
            return

        if values:
            result = await self.provider.create_record(artifact.domain, record)
        else:
            result = await self.provider.upsert_record(artifact.domain, record)

        if not result.success:
            raise ProviderError(
                self.provider.name,
                f"Could not publish TXT record {record.name}: {result.message}",
            )

        logger.debug("Published TXT record %s = %s", record.name, record.content)
        values.append(artifact.record_value)

    async def cleanup_challenge(self, artifact: Dns01Artifact) -> None:
        """Deletes the TXT record of the given artifact.

        A record that does not exist (anymore) is not an error.

        :param artifact: The *dns-01* artifact.
        :raises: :class:`~acmeissuer.client.exceptions.ProviderError` If the provider failed to delete the record.
        """
        values = self._published.get(artifact.record_name, [])
        with contextlib.suppress(ValueError):
            values.remove(artifact.record_value)
        if not values:
            self._published.pop(artifact.record_name, None)

        record = self._record(artifact)
        result = await self.provider.delete_record(artifact.domain, record)

        if result.success:
            logger.debug("Deleted TXT record %s = %s", record.name, record.content)
        elif result.message == RECORD_NOT_FOUND:
            logger.debug("TXT record %s = %s was already gone", record.name, record.content)
        else:
            raise ProviderError(
                self.provider.name,
                f"Could not delete TXT record {record.name}: {result.message}",
            )

    async def query_txt_record(self, name: str) -> typing.List[str]:
        """Queries a DNS TXT record.

        :param name: Name of the TXT record to query.
        :return: List of strings stored in the TXT record.
        """
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = self.dns_servers

        txt_records = []
        with contextlib.suppress(
            dns.asyncresolver.NXDOMAIN, dns.asyncresolver.NoAnswer
        ):
            resp = await resolver.resolve(name, "TXT")

            for records in resp.rrset:
                txt_records.extend([record.decode() for record in records.strings])

        return txt_records

    async def _query_until_visible(self, name: str, text: str) -> None:
        while True:
            try:
                records = await self.query_txt_record(name)
            except dns.exception.DNSException as e:
                logger.debug("Querying %s failed: %s", name, e)
                records = []

            if text in records:
                return

            logger.debug(
                "%s does not have TXT %s yet. Retrying (Records: %s)", name, text, records
            )
            await asyncio.sleep(self.POLLING_DELAY)

    async def wait_for_propagation(self, artifacts: typing.List[Artifact]) -> None:
        await super().wait_for_propagation(artifacts)

        if not self.verify_propagation:
            return

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    *[
                        self._query_until_visible(a.record_name, a.record_value)
                        for a in artifacts
                    ]
                ),
                self.POLLING_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise ProviderError(
                self.provider.name,
                f"TXT records not visible after {self.POLLING_TIMEOUT:.0f}s",
            )


class Http01Solver(ChallengeSolver):
    """Solves *http-01* challenges through callbacks of the caller, who serves the files."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    def __init__(
        self,
        publish: typing.Callable[[Http01Artifact], typing.Awaitable[None]],
        unpublish: typing.Callable[[Http01Artifact], typing.Awaitable[None]],
        propagation_delay: float = 0.0,
    ):
        self._publish = publish
        self._unpublish = unpublish
        self.propagation_delay = propagation_delay

    async def complete_challenge(self, artifact: Http01Artifact) -> None:
        await self._publish(artifact)

    async def cleanup_challenge(self, artifact: Http01Artifact) -> None:
        await self._unpublish(artifact)


@PluginRegistry.register_plugin("dummy")
class DummySolver(ChallengeSolver):
    """Dummy challenge solver that does not actually publish anything."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01, ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["dummy"] = "dummy"

    async def complete_challenge(self, artifact: Artifact) -> None:
        logger.debug("(not) publishing %s", artifact)

    async def cleanup_challenge(self, artifact: Artifact) -> None:
        logger.debug("(not) cleaning up %s", artifact)
