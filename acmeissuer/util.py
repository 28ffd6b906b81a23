import re
import typing
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

KEY_FILE_MODE = 0o600

PrivateKey = typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


def generate_csr(
    CN: str,
    private_key: PrivateKey,
    names: typing.List[str],
    path: typing.Optional[Path] = None,
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    :param CN: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :param names: The requested names in the CSR.
    :param path: Optional path to write the PEM-serialized CSR to.
    :return: The generated CSR.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, CN)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    if path:
        with open(path, "wb") as pem_out:
            pem_out.write(csr.public_bytes(serialization.Encoding.PEM))

    return csr


def private_key_pem(private_key: PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def write_private_key(path: Path, pem: bytes) -> None:
    path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)

    with open(path, "wb") as pem_out:
        pem_out.write(pem)


def generate_rsa_key(
    path: typing.Optional[Path] = None, key_size=2048
) -> rsa.RSAPrivateKey:
    """Generates an RSA private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The RSA key size.
    :return: The generated private key.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    if path:
        write_private_key(path, private_key_pem(private_key))

    return private_key


def generate_ec_key(
    path: typing.Optional[Path] = None, key_size=256
) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())

    if path:
        write_private_key(path, private_key_pem(private_key))

    return private_key


def names_of(
    csr: x509.CertificateSigningRequest, lower: bool = False
) -> typing.Set[str]:
    """Returns all names contained in the given CSR.

    :param csr: The CSR whose names to extract.
    :param lower: True if the names should be returned in lowercase.
    :return: Set of the contained identifier strings.
    """
    names = [
        v.value
        for v in csr.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)
    ]
    names.extend(
        csr.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value.get_values_for_type(x509.DNSName)
    )

    return set([name.lower() if lower else name for name in names])


_PEM_RE = re.compile(
    r"-----BEGIN (?P<cls>[A-Z ]+)-----\r?\n.+?\r?\n-----END (?P=cls)-----\r?\n?",
    re.DOTALL,
)


def pem_split(pem: str) -> typing.List[str]:
    """Splits a string of concatenated PEM blocks into the individual blocks.

    :param pem: The concatenated PEM encoded objects, e.g. a certificate chain.
    :return: List of the PEM blocks in their original order, each ending in a newline.
    """
    blocks = []
    for match in _PEM_RE.finditer(pem):
        block = match.group(0)
        blocks.append(block if block.endswith("\n") else block + "\n")
    return blocks
