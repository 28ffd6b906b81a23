import asyncio
import logging
import logging.config
from pathlib import Path
from typing import Annotated, Any, List, Optional, Union

import click
import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from acmeissuer.client import AcmeClient, ChallengeSolver, Dns01Solver, DummySolver
from acmeissuer.dns import DnsProvider
from acmeissuer.plugin_base import PluginRegistry
from acmeissuer.util import generate_ec_key, generate_rsa_key, write_private_key

logger = logging.getLogger(__name__)

PluginRegistry.load_plugins(r"dns")
challenge_solver_registry = PluginRegistry.get_registry(ChallengeSolver)
dns_provider_registry = PluginRegistry.get_registry(DnsProvider)


class Config(BaseSettings, extra="forbid"):
    client: AcmeClient.Config = Field(default_factory=AcmeClient.Config)
    domain: str
    subject_alternative_names: List[str] = Field(default_factory=list)
    solver: Annotated[
        Union[Dns01Solver.Config, DummySolver.Config], Field(discriminator="type")
    ]
    logging: Optional[Any] = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream)

    return Config.model_validate(config)


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
def plugins():
    """Lists the available plugins and their respective config strings."""
    for plugins in [
        ("Challenge solvers", challenge_solver_registry.config_mapping()),
        ("DNS providers", dns_provider_registry.config_mapping()),
    ]:
        click.echo(
            f"{plugins[0]}: {', '.join([f'{cls.__name__} ({config_name})' for config_name, cls in plugins[1].items()])}"
        )


@main.command()
@click.argument("account-key-file", type=click.Path())
@click.option(
    "--key-type",
    "-k",
    type=click.Choice(["rsa", "ec"], case_sensitive=False),
    default="ec",
    show_default=True,
)
def generate_account_key(account_key_file, key_type):
    """Generates an account key for the ACME client."""
    click.echo(f"Generating client key of type {key_type} at {account_key_file}.")
    account_key_file = Path(account_key_file)
    if key_type == "rsa":
        generate_rsa_key(account_key_file)
    else:
        generate_ec_key(account_key_file)


async def issue_certificate(config: Config):
    solver = challenge_solver_registry.get_plugin(config.solver.type).from_config(
        config.solver
    )

    try:
        async with AcmeClient.from_config(config.client) as client:
            return await client.obtain_certificate(
                config.domain,
                config.subject_alternative_names,
                solver=solver,
            )
    finally:
        if isinstance(solver, Dns01Solver):
            await solver.provider.close()


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path(), required=True)
@click.option(
    "--out",
    type=click.Path(file_okay=False),
    default=".",
    show_default=True,
    help="Directory to write cert.pem, chain.pem, fullchain.pem and privkey.pem to.",
)
def issue(config_file: str, out: str):
    """Obtains a certificate for the domains in the config file."""
    config: Config = load_config(config_file)

    if config.logging:
        logging.config.dictConfig(config.logging)

    names = [config.domain, *config.subject_alternative_names]
    click.echo(f"Requesting a certificate for {', '.join(names)}")

    bundle = asyncio.run(issue_certificate(config))

    out = Path(out)
    out.mkdir(parents=True, exist_ok=True)
    for name, content in [
        ("cert.pem", bundle.certificate),
        ("chain.pem", bundle.chain),
        ("fullchain.pem", bundle.fullchain),
    ]:
        (out / name).write_text(content)

    write_private_key(out / "privkey.pem", bundle.private_key.encode())

    click.echo(f"Certificate valid until {bundle.expires_at.isoformat()} written to {out}")


if __name__ == "__main__":
    main()
