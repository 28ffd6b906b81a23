import asyncio
import logging
import ssl
import typing

import aiohttp
import cachetools

from acmeissuer.client.exceptions import TransportError

logger = logging.getLogger(__name__)


class NonceSource:
    """Hands out single-use anti-replay nonces.

    Nonces are taken from the cache of values returned in prior *Replay-Nonce*
    response headers, or fetched from the server's *newNonce* resource when
    the cache is empty. Every nonce is handed out at most once.

    Instances are not safe for concurrent use. :class:`~acmeissuer.client.session.AcmeSession`
    serializes access to its nonce source.
    """

    HISTORY_SIZE = 4096
    """How many consumed nonces are remembered to reject their re-insertion."""

    def __init__(
        self, http: aiohttp.ClientSession, ssl_context: ssl.SSLContext = None
    ):
        self._http = http
        self._ssl_context = ssl_context
        self._cached: typing.List[str] = []
        self._consumed = cachetools.LRUCache(maxsize=self.HISTORY_SIZE)

    def __len__(self):
        return len(self._cached)

    def add(self, nonce: typing.Optional[str]) -> None:
        """Stores a nonce taken from a response for later use.

        Values that have been handed out before are ignored.
        """
        if not nonce or nonce in self._consumed or nonce in self._cached:
            return

        logger.debug("Storing new nonce %s", nonce)
        self._cached.append(nonce)

    def is_consumed(self, nonce: str) -> bool:
        return nonce in self._consumed

    async def fetch(self, new_nonce_url: str) -> str:
        """Returns a nonce that has not been used before.

        :param new_nonce_url: The server's *newNonce* resource.
        :raises: :class:`TransportError` If the server could not be reached or sent no nonce.
        :return: The nonce, which is marked as consumed.
        """
        if self._cached:
            nonce = self._cached.pop()
        else:
            nonce = await self._request_nonce(new_nonce_url)

        self._consumed[nonce] = True
        return nonce

    async def _request_nonce(self, new_nonce_url: str) -> str:
        try:
            async with self._http.head(new_nonce_url, ssl=self._ssl_context) as resp:
                nonce = resp.headers.get("Replay-Nonce")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Could not fetch a nonce from {new_nonce_url}: {e}")

        if not nonce:
            raise TransportError(
                f"The server did not return a nonce from {new_nonce_url} (status {resp.status})"
            )

        if nonce in self._consumed:
            raise TransportError(f"The server returned the already used nonce {nonce}")

        logger.debug("Fetched new nonce %s", nonce)
        return nonce
