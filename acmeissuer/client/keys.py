import typing
from pathlib import Path

import josepy
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec

import acmeissuer.util

_EC_ALGS = {
    "secp256r1": josepy.jwa.ES256,
    "secp384r1": josepy.jwa.ES384,
    "secp521r1": josepy.jwa.ES512,
}


class AccountKey:
    """The key pair that identifies an ACME account.

    The key is owned by the caller and may be shared by several clients.
    Its thumbprint binds challenges to the account, so it must not change
    once an account has been registered against it.

    :ivar key: The private key as a :class:`josepy.jwk.JWK`.
    :ivar alg: The :class:`josepy.jwa.JWASignature` used to sign with the key.
    """

    def __init__(self, private_key: acmeissuer.util.PrivateKey):
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            if private_key.curve.name not in _EC_ALGS:
                raise ValueError(f"Unsupported curve {private_key.curve.name}")
            self.key = josepy.jwk.JWKEC(key=private_key)
            self.alg = _EC_ALGS[private_key.curve.name]
        elif isinstance(private_key, rsa.RSAPrivateKey):
            if private_key.key_size < 2048:
                raise ValueError(
                    f"RSA account keys need at least 2048 bits, got {private_key.key_size}"
                )
            self.key = josepy.jwk.JWKRSA(key=private_key)
            self.alg = josepy.jwa.RS256
        else:
            raise ValueError(f"Unsupported key type {type(private_key).__name__}")

        self.private_key = private_key
        self._thumbprint = None

    @classmethod
    def generate(cls) -> "AccountKey":
        """Generates a fresh EC P-256 account key."""
        return cls(ec.generate_private_key(ec.SECP256R1()))

    @classmethod
    def load(cls, pem: typing.Union[str, bytes]) -> "AccountKey":
        """Loads an account key from an unencrypted PEM-encoded private key."""
        if isinstance(pem, str):
            pem = pem.encode()
        return cls(serialization.load_pem_private_key(pem, password=None))

    @classmethod
    def from_file(cls, path: typing.Union[str, Path]) -> "AccountKey":
        with open(path, "rb") as pem:
            return cls.load(pem.read())

    def jwk(self) -> typing.Dict[str, str]:
        """Returns the public key as a JSON Web Key."""
        return self.key.public_key().to_json()

    def thumbprint(self) -> str:
        """Returns the base64url encoded SHA-256 JWK thumbprint (RFC 7638)."""
        if self._thumbprint is None:
            self._thumbprint = josepy.encode_b64jose(self.key.thumbprint())
        return self._thumbprint

    def private_bytes(self) -> bytes:
        """Returns the PEM-encoded private key so that it can be persisted."""
        return acmeissuer.util.private_key_pem(self.private_key)

    def __eq__(self, other):
        if not isinstance(other, AccountKey):
            return NotImplemented
        return self.jwk() == other.jwk()

    def __hash__(self):
        return hash(self.thumbprint())
