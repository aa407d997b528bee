"""
Netforge -- Key Roles

A node holds three kinds of identity: the self-signed signing key, the EC keys
it certifies (agreement, encryption) and the gRPC TLS key. Each role is a
frozen variant carrying its algorithm parameters and file-naming rule.
Everything role-specific dispatches with ``match`` on the variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID

from netforge.systems.keys.types import NodeKeyFiles, PrivateKey

SIGNING_KEY_PREFIX = "s"
AGREEMENT_KEY_PREFIX = "a"
ENCRYPTION_KEY_PREFIX = "e"

_CURVES: dict[str, type[ec.EllipticCurve]] = {
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}


@dataclass(frozen=True)
class SigningRole:
    """Self-signed RSA key that certifies the node's EC keys."""

    key_size: int = 3072
    prefix: str = SIGNING_KEY_PREFIX


@dataclass(frozen=True)
class AgreementRole:
    """EC key certified by the node's signing key. Also used for ``e-`` keys."""

    curve: str = "secp384r1"
    prefix: str = AGREEMENT_KEY_PREFIX


@dataclass(frozen=True)
class TLSRole:
    """Self-signed RSA key for the node's gRPC endpoint."""

    key_size: int = 4096


KeyRole = SigningRole | AgreementRole | TLSRole


# ─── Naming ───────────────────────────────────────────────────────


def common_name(role: KeyRole, node_id: str) -> str:
    match role:
        case SigningRole(prefix=prefix) | AgreementRole(prefix=prefix):
            return f"{prefix}-{node_id}"
        case TLSRole():
            return node_id


def key_file_paths(role: KeyRole, node_id: str, keys_dir: str | Path) -> NodeKeyFiles:
    """Where a role's private key and certificate chain live for ``node_id``."""
    keys_dir = Path(keys_dir)
    match role:
        case SigningRole(prefix=prefix) | AgreementRole(prefix=prefix):
            return NodeKeyFiles(
                private_key_file=keys_dir / f"{prefix}-private-{node_id}.pem",
                certificate_file=keys_dir / f"{prefix}-public-{node_id}.pem",
            )
        case TLSRole():
            return NodeKeyFiles(
                private_key_file=keys_dir / f"hedera-{node_id}.key",
                certificate_file=keys_dir / f"hedera-{node_id}.crt",
            )


# ─── Algorithms ───────────────────────────────────────────────────


def generate_private_key(role: KeyRole) -> PrivateKey:
    """Raises ``ValueError`` / ``TypeError`` if the provider rejects the parameters."""
    match role:
        case SigningRole(key_size=size) | TLSRole(key_size=size):
            return rsa.generate_private_key(public_exponent=65537, key_size=size)
        case AgreementRole(curve=curve):
            if curve not in _CURVES:
                raise ValueError(f"Unsupported curve: {curve}")
            return ec.generate_private_key(_CURVES[curve]())


def signature_hash(role: KeyRole) -> hashes.HashAlgorithm:
    match role:
        case SigningRole() | AgreementRole() | TLSRole():
            return hashes.SHA384()


def matches_key_type(role: KeyRole, private_key: object) -> bool:
    match role:
        case SigningRole() | TLSRole():
            return isinstance(private_key, rsa.RSAPrivateKey)
        case AgreementRole():
            return isinstance(private_key, ec.EllipticCurvePrivateKey)


def key_usage(role: KeyRole) -> x509.KeyUsage:
    match role:
        case SigningRole():
            return _usage(key_cert_sign=True, crl_sign=True)
        case AgreementRole():
            return _usage(digital_signature=True, key_encipherment=True)
        case TLSRole():
            return _usage(
                digital_signature=True,
                key_encipherment=True,
                data_encipherment=True,
            )


def extended_key_usage(role: KeyRole) -> x509.ExtendedKeyUsage | None:
    match role:
        case SigningRole() | TLSRole():
            return x509.ExtendedKeyUsage([
                ExtendedKeyUsageOID.SERVER_AUTH,
                ExtendedKeyUsageOID.CLIENT_AUTH,
            ])
        case AgreementRole():
            return None


def basic_constraints(role: KeyRole) -> x509.BasicConstraints:
    match role:
        case SigningRole():
            return x509.BasicConstraints(ca=True, path_length=1)
        case AgreementRole() | TLSRole():
            return x509.BasicConstraints(ca=False, path_length=None)


def _usage(
    *,
    digital_signature: bool = False,
    key_encipherment: bool = False,
    data_encipherment: bool = False,
    key_cert_sign: bool = False,
    crl_sign: bool = False,
) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=digital_signature,
        content_commitment=False,
        key_encipherment=key_encipherment,
        data_encipherment=data_encipherment,
        key_agreement=False,
        key_cert_sign=key_cert_sign,
        crl_sign=crl_sign,
        encipher_only=False,
        decipher_only=False,
    )
