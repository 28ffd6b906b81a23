import asyncio
import json
import logging
import ssl
import typing
from dataclasses import dataclass

import acme.messages
import aiohttp

from acmeissuer.client.exceptions import ProtocolError, TransportError
from acmeissuer.client.jws import Payload, RequestSigner
from acmeissuer.client.keys import AccountKey
from acmeissuer.client.nonce import NonceSource

logger = logging.getLogger(__name__)

ACME_DIRECTORIES = {
    "production": "https://acme-v02.api.letsencrypt.org/directory",
    "staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
}
"""Directory URLs of the Let's Encrypt environments."""


@dataclass
class AcmeResponse:
    status: int
    headers: typing.Mapping[str, str]
    data: typing.Union[dict, str]
    """The decoded JSON body, or the body as text for other content types."""
    location: typing.Optional[str] = None
    """The *Location* header, which carries the URL of newly created resources."""


class AcmeSession:
    """Per-client ACME protocol state: the directory, the nonce cache and the account URL.

    Only one signed request is in flight per session at any time.
    Independent sessions do not share any state and may be used in parallel.
    """

    BAD_NONCE_RETRIES = 1
    """How often a request is repeated with a fresh nonce after the server returned *badNonce*."""

    def __init__(
        self,
        directory_url: str,
        account_key: AccountKey,
        http: aiohttp.ClientSession,
        ssl_context: ssl.SSLContext = None,
        transport_retries: int = 3,
        backoff: float = 1.0,
    ):
        self.directory_url = directory_url
        self.account_key = account_key
        self.kid: typing.Optional[str] = None
        """The account URL. Requests carry the JWK instead as long as this is *None*."""

        self._http = http
        self._ssl_context = ssl_context
        self._transport_retries = transport_retries
        self._backoff = backoff

        self._signer = RequestSigner(account_key)
        self._nonces = NonceSource(http, ssl_context)
        self._directory: typing.Optional[dict] = None
        self._lock = asyncio.Lock()

    @property
    def nonces(self) -> NonceSource:
        return self._nonces

    async def directory(self) -> dict:
        """Fetches the server's directory once and returns the cached copy afterwards.

        :raises: :class:`TransportError` If the directory could not be fetched.
        """
        if self._directory is None:
            self._directory = await self._retry_transport(self._fetch_directory)
        return self._directory

    async def request(
        self, url: str, payload: Payload = None, accept: str = None
    ) -> AcmeResponse:
        """Sends a signed request to the server.

        :param url: The resource to POST to.
        :param payload: The request payload. *None* sends a POST-as-GET request.
        :param accept: Optional *Accept* header, e.g. for certificate downloads.
        :raises:

            * :class:`ProtocolError` If the server answered with a problem document or a client error.
            * :class:`TransportError` If the server could not be reached after all retries.

        :return: The server's response.
        """
        async with self._lock:
            return await self._retry_transport(
                self._signed_request, url, payload, accept
            )

    async def _retry_transport(self, coro, *args):
        attempt = 0
        while True:
            try:
                return await coro(*args)
            except TransportError as e:
                if attempt >= self._transport_retries:
                    raise
                delay = self._backoff * 2**attempt
                attempt += 1
                logger.warning(
                    "%s, retrying in %.1fs (%d/%d)",
                    e,
                    delay,
                    attempt,
                    self._transport_retries,
                )
                await asyncio.sleep(delay)

    async def _signed_request(
        self, url: str, payload: Payload, accept: typing.Optional[str]
    ) -> AcmeResponse:
        directory = await self.directory()

        tries = self.BAD_NONCE_RETRIES + 1
        while True:
            nonce = await self._nonces.fetch(directory["newNonce"])
            jws = self._signer.sign(url, payload, nonce, kid=self.kid)
            try:
                return await self._post(url, jws, accept)
            except ProtocolError as e:
                tries -= 1
                if e.code == "badNonce" and tries > 0:
                    logger.debug("Server rejected nonce %s, retrying", nonce)
                    continue
                raise

    async def _fetch_directory(self) -> dict:
        try:
            async with self._http.get(
                self.directory_url, ssl=self._ssl_context
            ) as resp:
                if resp.status >= 400:
                    raise TransportError(
                        f"Could not fetch the directory {self.directory_url}: status {resp.status}"
                    )
                directory = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"Could not fetch the directory {self.directory_url}: {e}"
            )

        logger.debug("Fetched directory %s", directory)
        return directory

    async def _post(
        self, url: str, jws: dict, accept: typing.Optional[str]
    ) -> AcmeResponse:
        headers = {"Content-Type": "application/jose+json"}
        if accept:
            headers["Accept"] = accept

        try:
            async with self._http.post(
                url, data=json.dumps(jws), headers=headers, ssl=self._ssl_context
            ) as resp:
                # The nonce is valid regardless of the outcome of the request.
                self._nonces.add(resp.headers.get("Replay-Nonce"))

                if resp.content_type == "application/problem+json":
                    error = acme.messages.Error.from_json(
                        await resp.json(content_type=None)
                    )
                    raise ProtocolError(error, status=resp.status)

                if resp.status >= 500:
                    raise TransportError(
                        f"Server error {resp.status} for {url}: {await resp.text()}"
                    )

                if resp.status >= 400:
                    error = acme.messages.Error(
                        typ="about:blank",
                        title=resp.reason,
                        detail=f"HTTP {resp.status} for {url}",
                    )
                    raise ProtocolError(error, status=resp.status)

                if resp.content_type == "application/json":
                    data = await resp.json()
                else:
                    data = await resp.text()

                logger.debug(data)
                return AcmeResponse(
                    status=resp.status,
                    headers=resp.headers,
                    data=data,
                    location=resp.headers.get("Location"),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Request to {url} failed: {e}")
