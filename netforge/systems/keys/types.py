"""
Netforge -- Key Types

Containers for generated key material and the files it is stored in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa

PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey


@dataclass
class NodeKey:
    """
    A private key and its certificate chain, leaf first.

    Signing keys carry ``[signing_cert]``; agreement keys carry
    ``[agreement_cert, signing_cert]``.
    """

    private_key: PrivateKey
    certificate: x509.Certificate
    certificate_chain: list[x509.Certificate] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.certificate_chain:
            self.certificate_chain = [self.certificate]

    @property
    def fingerprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA256()).hex()


@dataclass(frozen=True)
class NodeKeyFiles:
    private_key_file: Path
    certificate_file: Path

    def __iter__(self):
        yield self.private_key_file
        yield self.certificate_file
