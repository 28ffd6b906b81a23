import json
import typing

import cachetools
import josepy
from acme import jws

from acmeissuer.client.keys import AccountKey

Payload = typing.Optional[typing.Union[typing.Mapping, josepy.JSONDeSerializable]]


def encode_payload(payload: Payload) -> bytes:
    """Serializes a request payload.

    *None* stands for POST-as-GET and is encoded as the empty string.
    """
    if payload is None:
        return b""
    if isinstance(payload, josepy.JSONDeSerializable):
        return payload.json_dumps().encode()
    return json.dumps(payload).encode()


class RequestSigner:
    """Builds the flattened JWS envelope that every authenticated ACME request carries.

    `6.2. Request Authentication <https://tools.ietf.org/html/rfc8555#section-6.2>`_
    """

    HISTORY_SIZE = 4096

    def __init__(self, key: AccountKey):
        self.key = key
        self._used_nonces = cachetools.LRUCache(maxsize=self.HISTORY_SIZE)

    def sign(
        self, url: str, payload: Payload, nonce: str, kid: str = None
    ) -> typing.Dict[str, str]:
        """Signs a request.

        :param url: The URL that the request will be sent to.
        :param payload: The JSON payload, or *None* for POST-as-GET.
        :param nonce: A fresh nonce. It becomes unusable for further signatures.
        :param kid: The account URL. If not given, the account's JWK is embedded instead.
        :raises: :class:`ValueError` If the nonce has already been used by this signer
            or is not base64url encoded.
        :return: The JWS as a dict with the members *protected*, *payload* and *signature*.
        """
        if nonce in self._used_nonces:
            raise ValueError(f"Nonce {nonce} has already been used")

        try:
            raw_nonce = josepy.decode_b64jose(nonce)
        except josepy.DeserializationError as e:
            raise ValueError(f"Nonce {nonce} is not base64url encoded") from e
        self._used_nonces[nonce] = True

        return jws.JWS.sign(
            encode_payload(payload),
            key=self.key.key,
            alg=self.key.alg,
            nonce=raw_nonce,
            url=url,
            kid=kid,
        ).to_json()
