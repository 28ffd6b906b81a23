import logging
import os
import typing

import pydantic
from pydantic import Field

from acmeissuer.plugin_base import PluginRegistry
from .base import (
    CreateRecordResult,
    DeleteRecordResult,
    DnsApiError,
    DnsProvider,
    DnsRecord,
    DnsRecordType,
    ListRecordsResult,
    fqdn,
    relative_name,
    root_domain,
)
from .cloudflare import CloudflareProvider
from .godaddy import GoDaddyProvider
from .porkbun import PorkbunProvider
from .route53 import Route53Provider

logger = logging.getLogger(__name__)

dns_provider_registry = PluginRegistry.get_registry(DnsProvider)

DnsProviderConfig = typing.Annotated[
    typing.Union[
        Route53Provider.Config,
        PorkbunProvider.Config,
        GoDaddyProvider.Config,
        CloudflareProvider.Config,
    ],
    Field(discriminator="type"),
]
"""A backend configuration, selected by its *type*."""


def create_dns_provider(config: DnsProvider.Config) -> DnsProvider:
    """Instantiates the backend that the configuration's *type* names.

    :raises: :class:`ValueError` If no backend is registered under that type.
    """
    provider_cls = dns_provider_registry.get_plugin(config.type)
    return provider_cls(config)


async def detect_dns_provider(
    domain: str, configs: typing.Iterable[DnsProvider.Config]
) -> typing.Optional[DnsProvider]:
    """Returns the first configured backend that can manage the given domain.

    Backends that cannot manage the domain are closed again.
    """
    for config in configs:
        provider = create_dns_provider(config)
        if await provider.can_manage_domain(domain):
            logger.debug("Detected %s as the DNS provider of %s", provider.name, domain)
            return provider
        await provider.close()

    return None


class DnsProviderFactory:
    """Collects backend configurations and hands out providers for them.

    Providers obtained through :meth:`get_provider` are cached and closed by :meth:`close`.
    """

    ENV_CONFIGS = (
        Route53Provider.Config,
        PorkbunProvider.Config,
        GoDaddyProvider.Config,
        CloudflareProvider.Config,
    )

    def __init__(self):
        self._configs: typing.List[DnsProvider.Config] = []
        self._providers: typing.Dict[str, DnsProvider] = {}

    @property
    def configs(self) -> typing.List[DnsProvider.Config]:
        return list(self._configs)

    def add_config(self, config: DnsProvider.Config) -> "DnsProviderFactory":
        self._configs.append(config)
        return self

    def load_from_env(self) -> "DnsProviderFactory":
        """Adds the configuration of every backend whose credentials are set in the environment.

        Route 53 is added if *AWS_ACCESS_KEY_ID* or *AWS_REGION* is set, since boto3 reads its
        credentials on its own. The other backends are added if their required variables,
        e.g. *PORKBUN_API_KEY* and *PORKBUN_SECRET_KEY*, are set.
        """
        for config_cls in self.ENV_CONFIGS:
            if config_cls is Route53Provider.Config and not (
                os.environ.get("AWS_ACCESS_KEY_ID") or os.environ.get("AWS_REGION")
            ):
                continue

            try:
                config = config_cls()
            except pydantic.ValidationError:
                logger.debug("No credentials for %s in the environment", config_cls)
                continue

            self.add_config(config)

        return self

    def get_provider(self, name: str) -> typing.Optional[DnsProvider]:
        """Returns the provider of the given type, or *None* if none was configured."""
        if name in self._providers:
            return self._providers[name]

        config = next((c for c in self._configs if c.type == name), None)
        if config is None:
            return None

        provider = self._providers[name] = create_dns_provider(config)
        return provider

    async def get_provider_for_domain(self, domain: str) -> typing.Optional[DnsProvider]:
        """Returns the first configured provider that can manage the given domain."""
        for config in self._configs:
            provider = self.get_provider(config.type)
            if await provider.can_manage_domain(domain):
                return provider
        return None

    def get_all_providers(self) -> typing.List[DnsProvider]:
        return [self.get_provider(config.type) for config in self._configs]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()


__all__ = [
    "CloudflareProvider",
    "CreateRecordResult",
    "DeleteRecordResult",
    "DnsApiError",
    "DnsProvider",
    "DnsProviderConfig",
    "DnsProviderFactory",
    "DnsRecord",
    "DnsRecordType",
    "GoDaddyProvider",
    "ListRecordsResult",
    "PorkbunProvider",
    "Route53Provider",
    "create_dns_provider",
    "detect_dns_provider",
    "fqdn",
    "relative_name",
    "root_domain",
]
