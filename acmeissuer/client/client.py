import asyncio
import contextlib
import logging
import ssl
import typing
from pathlib import Path

import acme.messages
import aiohttp
import pydantic
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from pydantic_settings import BaseSettings

import acmeissuer.util
from acmeissuer.client.challenge_solver import ChallengeSolver
from acmeissuer.client.exceptions import (
    AcmeClientException,
    PollingTimeout,
    Step,
    ValidationFailure,
)
from acmeissuer.client.keys import AccountKey
from acmeissuer.client.models import (
    Authorization,
    CertificateBundle,
    Order,
    OrderStatus,
)
from acmeissuer.client.orchestrator import ChallengeOrchestrator
from acmeissuer.client.session import ACME_DIRECTORIES, AcmeSession
from acmeissuer.version import __version__

logger = logging.getLogger(__name__)

PEM_CHAIN = "application/pem-certificate-chain"


def is_valid(obj):
    return obj.is_valid


def is_invalid(obj):
    return obj.is_invalid


def is_failed(obj):
    return obj.is_failed


def is_ready(order: Order):
    return order.status in (OrderStatus.READY, OrderStatus.PROCESSING, OrderStatus.VALID)


@contextlib.contextmanager
def _step(step: Step):
    try:
        yield
    except AcmeClientException as e:
        if e.step is None:
            e.step = step
        raise


class AcmeClient:
    """ACME compliant client that obtains certificates for a set of domains.

    Each client holds its own :class:`~acmeissuer.client.session.AcmeSession`, so clients
    can be used in parallel while requests within one client are serialized.
    """

    class Config(BaseSettings, extra="forbid"):
        directory: typing.Optional[str] = None
        """directory URL of the CA, defaults to Let's Encrypt"""
        staging: bool = False
        """use the Let's Encrypt staging environment if no directory is given"""
        private_key: typing.Optional[Path] = None
        """PEM file of the account key, a fresh key is generated if not given"""
        email: typing.Optional[str] = None
        """contact email used on account registration"""
        server_cert: typing.Optional[Path] = None
        """additional CA certificate to trust, e.g. for a test CA"""
        poll_delay: float = 3.0
        poll_attempts: pydantic.PositiveInt = 20
        transport_retries: int = 3
        backoff: float = 1.0

    def __init__(
        self,
        *,
        directory_url: str = None,
        staging: bool = False,
        account_key: AccountKey = None,
        email: str = None,
        server_cert: typing.Union[str, Path] = None,
        poll_delay: float = 3.0,
        poll_attempts: int = 20,
        transport_retries: int = 3,
        backoff: float = 1.0,
    ):
        """Creates an :class:`AcmeClient` instance.

        :param directory_url: The ACME server's directory. Defaults to Let's Encrypt production,
            or staging if *staging* is set.
        :param staging: Whether to use the Let's Encrypt staging environment.
        :param account_key: The account key. A fresh EC P-256 key is generated if not given.
        :param email: The contact email to supply on registration.
        :param server_cert: Path of a CA certificate to add to the SSL context.
        :param poll_delay: Time in seconds between polls of authorizations and orders.
        :param poll_attempts: Number of polls before giving up with a :class:`PollingTimeout`.
        :param transport_retries: Number of retries after network failures.
        :param backoff: Initial delay in seconds of the exponential backoff between those retries.
        :raises: :class:`ValueError` If *poll_attempts* is less than 1.
        """
        if poll_attempts < 1:
            raise ValueError(f"At least one poll attempt is required, got {poll_attempts}")

        self.directory_url = directory_url or ACME_DIRECTORIES[
            "staging" if staging else "production"
        ]
        self.account_key = account_key or AccountKey.generate()
        self.email = email
        self.poll_delay = poll_delay
        self.poll_attempts = poll_attempts

        self._ssl_context = ssl.create_default_context()
        if server_cert:
            self._ssl_context.load_verify_locations(cafile=str(server_cert))

        self._transport_retries = transport_retries
        self._backoff = backoff
        self._http: typing.Optional[aiohttp.ClientSession] = None
        self._session: typing.Optional[AcmeSession] = None

    @classmethod
    def from_config(cls, cfg: Config) -> "AcmeClient":
        return cls(
            directory_url=cfg.directory,
            staging=cfg.staging,
            account_key=AccountKey.from_file(cfg.private_key) if cfg.private_key else None,
            email=cfg.email,
            server_cert=cfg.server_cert,
            poll_delay=cfg.poll_delay,
            poll_attempts=cfg.poll_attempts,
            transport_retries=cfg.transport_retries,
            backoff=cfg.backoff,
        )

    @property
    def session(self) -> AcmeSession:
        if self._session is None:
            raise RuntimeError("The client has not been started")
        return self._session

    @property
    def account_url(self) -> typing.Optional[str]:
        return self._session.kid if self._session else None

    async def start(self) -> None:
        """Opens the client's HTTP session and fetches the ACME directory.

        This method must be called before making requests to the ACME server.
        """
        self._http = aiohttp.ClientSession(
            headers={"User-Agent": f"acmeissuer {__version__}"}
        )
        self._session = AcmeSession(
            self.directory_url,
            self.account_key,
            self._http,
            ssl_context=self._ssl_context,
            transport_retries=self._transport_retries,
            backoff=self._backoff,
        )
        await self._session.directory()

    async def close(self) -> None:
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        if self._http is not None:
            await self._http.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def account_register(
        self, email: str = None, only_return_existing: bool = False
    ) -> str:
        """Registers an account with the CA, or looks up the existing account of the account key.

        The account URL is stored and used to sign all subsequent requests.

        :param email: The contact email. Defaults to the email given on initialization.
        :param only_return_existing: Only look up the account, do not create it.
        :raises: :class:`~acmeissuer.client.exceptions.ProtocolError` If the server rejects the
            registration, e.g. with *accountDoesNotExist* on lookup.
        :return: The account URL.
        """
        with _step(Step.ACCOUNT_REGISTRATION):
            directory = await self.session.directory()
            reg = acme.messages.Registration.from_data(
                email=email or self.email,
                terms_of_service_agreed=True,
                only_return_existing=only_return_existing or None,
            )

            # Registration requests have to carry the JWK instead of the kid.
            self.session.kid = None
            resp = await self.session.request(directory["newAccount"], reg)
            self.session.kid = resp.location

        logger.info("Using account %s", resp.location)
        return resp.location

    async def order_create(self, domains: typing.Iterable[str]) -> Order:
        """Creates a new order for the given domains.

        :param domains: The fully qualified domain names, wildcards included.
        :raises: :class:`~acmeissuer.client.exceptions.ProtocolError` If the server is unwilling
            to create an order for the domains.
        :return: The new order.
        """
        with _step(Step.ORDER_CREATION):
            directory = await self.session.directory()
            new_order = acme.messages.NewOrder(
                identifiers=[
                    acme.messages.Identifier(typ=acme.messages.IDENTIFIER_FQDN, value=domain)
                    for domain in domains
                ]
            )
            resp = await self.session.request(directory["newOrder"], new_order)

        order = Order.from_json(resp.location, resp.data)
        logger.debug("Created order %s for %s", order.url, ", ".join(order.identifiers))
        return order

    async def order_get(self, order: Order) -> Order:
        """Refreshes the given order.

        The order is updated in place. Its status never moves backwards.

        :param order: The order to refresh.
        :return: The updated order.
        """
        resp = await self.session.request(order.url)
        return order.update(resp.data)

    async def authorization_get(self, authorization_url: str) -> Authorization:
        """Fetches an authorization given its URL.

        :param authorization_url: The authorization's URL.
        :return: The fetched authorization.
        """
        resp = await self.session.request(authorization_url)
        return Authorization.from_json(authorization_url, resp.data)

    async def challenge_validate(self, challenge) -> None:
        """Tells the server that the given challenge is ready for validation.

        :param challenge: The challenge whose artifact has been published.
        """
        logger.debug("Requesting validation of %s challenge %s", challenge.type, challenge.url)
        await self.session.request(challenge.url, {})

    async def authorization_poll(self, authorization_url: str) -> Authorization:
        """Polls the given authorization until it is valid.

        :param authorization_url: The authorization's URL.
        :raises:

            * :class:`~acmeissuer.client.exceptions.ValidationFailure` If the authorization
              became invalid. The CA's reason is in its *detail*.
            * :class:`~acmeissuer.client.exceptions.PollingTimeout` If the authorization
              did not reach a terminal state within the polling budget.

        :return: The valid authorization.
        """
        return await self._poll_until(
            self.authorization_get,
            authorization_url,
            predicate=is_valid,
            negative_predicate=is_failed,
            failure_detail=lambda authorization: authorization.failure_detail(),
        )

    async def authorizations_complete(
        self, order: Order, solver: ChallengeSolver
    ) -> typing.List[Authorization]:
        """Completes all authorizations associated with the given order.

        Uses the given solver to complete one challenge per pending authorization and
        removes all published artifacts afterwards.

        :param order: Order whose authorizations should be completed.
        :param solver: The solver that publishes the challenges' artifacts.
        :return: The valid authorizations.
        """
        with _step(Step.AUTHORIZATION):
            return await ChallengeOrchestrator(self, solver).complete(order)

    async def order_finalize(
        self, order: Order, csr: x509.CertificateSigningRequest
    ) -> Order:
        """Finalizes the order using the given CSR.

        Waits for the order to become *ready* first, then submits the CSR and polls
        until the certificate has been issued.

        :param order: Order that is to be finalized.
        :param csr: The CSR that is submitted to apply for certificate issuance.
        :raises:

            * :class:`~acmeissuer.client.exceptions.ValidationFailure` If the order became invalid.
            * :class:`~acmeissuer.client.exceptions.PollingTimeout` If the order did not become valid in time.

        :return: The finalized order.
        """
        with _step(Step.FINALIZE):
            order = await self._poll_until(
                self.order_get,
                order,
                predicate=is_ready,
                negative_predicate=is_invalid,
                failure_detail=lambda o: o.error_detail,
            )

            if order.status == OrderStatus.READY:
                resp = await self.session.request(
                    order.finalize, acme.messages.CertificateRequest(csr=csr)
                )
                order.update(resp.data)

            return await self._poll_until(
                self.order_get,
                order,
                predicate=is_valid,
                negative_predicate=is_invalid,
                failure_detail=lambda o: o.error_detail,
            )

    async def certificate_get(self, order: Order) -> str:
        """Downloads the given order's certificate chain.

        :param order: The order whose certificate to download.
        :raises: :class:`ValueError` If the order has not been finalized yet.
        :return: The certificate chain encoded as PEM, leaf first.
        """
        if not order.certificate:
            raise ValueError("This order has not been finalized")

        with _step(Step.DOWNLOAD):
            resp = await self.session.request(order.certificate, accept=PEM_CHAIN)

        return resp.data

    async def certificate_revoke(
        self, certificate: x509.Certificate, reason: int = None
    ) -> bool:
        """Revokes the given certificate.

        :param certificate: The certificate to revoke.
        :param reason: Revocation reason code as defined in RFC 5280, *unspecified* (0) if not given.
        :raises: :class:`~acmeissuer.client.exceptions.ProtocolError` If the revocation did not succeed.
        :return: *True* if the revocation succeeded.
        """
        directory = await self.session.directory()
        revocation = acme.messages.Revocation(
            certificate=certificate, reason=0 if reason is None else reason
        )

        resp = await self.session.request(directory["revokeCert"], revocation)
        return resp.status == 200

    async def obtain_certificate(
        self,
        domain: str,
        subject_alternative_names: typing.Iterable[str] = (),
        solver: ChallengeSolver = None,
        key: acmeissuer.util.PrivateKey = None,
    ) -> CertificateBundle:
        """Runs the whole issuance for the given domains.

        Registers the account if necessary, creates an order, completes its authorizations,
        finalizes it and downloads the certificate.
        Errors are annotated with the step during which they occurred.

        :param domain: The certificate's common name.
        :param subject_alternative_names: Further names for the certificate.
        :param solver: The solver that publishes the challenges' artifacts.
        :param key: The certificate key. A fresh EC P-256 key is generated if not given.
        :raises: :class:`ValueError` If no solver was given or the certificate key is the account key.
        :return: The issued certificate with its chain and key.
        """
        if solver is None:
            raise ValueError("A challenge solver is required")

        domains = list(dict.fromkeys([domain, *subject_alternative_names]))
        key = key or acmeissuer.util.generate_ec_key()

        if self._same_key(key):
            raise ValueError("The certificate key must not be the account key")

        if self.account_url is None:
            await self.account_register()

        order = await self.order_create(domains)
        await self.authorizations_complete(order, solver)

        csr = acmeissuer.util.generate_csr(domain, key, domains)
        order = await self.order_finalize(order, csr)
        pem = await self.certificate_get(order)

        return self._bundle(pem, key, domains)

    def _same_key(self, key: acmeissuer.util.PrivateKey) -> bool:
        def spki(k):
            return k.public_key().public_bytes(
                serialization.Encoding.DER,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )

        return spki(key) == spki(self.account_key.private_key)

    @staticmethod
    def _bundle(
        pem: str, key: acmeissuer.util.PrivateKey, domains: typing.List[str]
    ) -> CertificateBundle:
        blocks = acmeissuer.util.pem_split(pem)
        if not blocks:
            raise ValueError("The server did not return a certificate")

        leaf = x509.load_pem_x509_certificate(blocks[0].encode())
        return CertificateBundle(
            certificate=blocks[0],
            chain="".join(blocks[1:]),
            fullchain="".join(blocks),
            private_key=acmeissuer.util.private_key_pem(key).decode(),
            expires_at=leaf.not_valid_after_utc,
            domains=domains,
        )

    async def _poll_until(
        self,
        coro,
        *args,
        predicate=None,
        negative_predicate=None,
        failure_detail=None,
        delay: float = None,
        max_tries: int = None,
    ):
        delay = self.poll_delay if delay is None else delay
        max_tries = max_tries or self.poll_attempts
        target = getattr(args[0], "url", args[0]) if args else ""

        for attempt in range(max_tries):
            result = await coro(*args)

            if predicate(result):
                return result

            if negative_predicate(result):
                # Terminal, the CA will not change its mind.
                raise ValidationFailure(result, failure_detail(result))

            logger.debug(
                "Polling %s %s, tries remaining: %d",
                coro.__name__,
                target,
                max_tries - attempt - 1,
            )
            if attempt < max_tries - 1:
                await asyncio.sleep(delay)

        raise PollingTimeout(
            result, f"Polling unsuccessful: {coro.__name__} {target} after {max_tries} tries"
        )
