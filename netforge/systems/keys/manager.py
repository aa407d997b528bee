"""
Netforge -- Key Manager

The certificate authority for a consensus network. Issues, stores, loads and
rotates each node's identities:

  s-<node>   self-signed RSA signing key, a CA for the node's own EC keys
  a-<node>   EC agreement key certified by the signing key
  e-<node>   EC encryption key (PKCS#12 only), certified the same way
  <node>     self-signed RSA gRPC TLS key

Keys are persisted either as PEM files or as PKCS#12 keystores
(``private-<node>.pfx`` per node plus the shared ``public.pfx``). The format
is chosen once per network.

Generation, store and load are synchronous and CPU-bound; callers on the event
loop offload them with ``asyncio.to_thread``. Keystore operations are async
because they drive an external tool.
"""

from __future__ import annotations

import contextlib
import re
import shutil
import tempfile
from collections.abc import Iterable, Iterator, Sequence
from datetime import timedelta
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from netforge.config import KeysConfig
from netforge.errors import (
    CertificateVerificationError,
    KeyGenerationError,
    KeyLoadError,
    MissingArgumentError,
)
from netforge.primitives.common import utc_now
from netforge.systems.keys.keytool import KeystoreTool
from netforge.systems.keys.public_store import PublicCertificateStore
from netforge.systems.keys.roles import (
    AGREEMENT_KEY_PREFIX,
    ENCRYPTION_KEY_PREFIX,
    SIGNING_KEY_PREFIX,
    AgreementRole,
    KeyRole,
    SigningRole,
    TLSRole,
    basic_constraints,
    common_name,
    extended_key_usage,
    generate_private_key,
    key_file_paths,
    key_usage,
    matches_key_type,
    signature_hash,
)
from netforge.systems.keys.types import NodeKey, NodeKeyFiles, PrivateKey

logger = structlog.get_logger("netforge.keys")

_PEM_BLOCK = re.compile(
    rb"-----BEGIN ([A-Z0-9 ]+)-----.+?-----END \1-----",
    re.DOTALL,
)

PFX_PREFIXES = (SIGNING_KEY_PREFIX, AGREEMENT_KEY_PREFIX, ENCRYPTION_KEY_PREFIX)


def split_pem_blocks(data: bytes) -> list[bytes]:
    """Return every PEM block in ``data``, in file order."""
    return [m.group(0) for m in _PEM_BLOCK.finditer(data)]


def build_certificate_chain(
    leaf: x509.Certificate,
    pool: Iterable[x509.Certificate],
) -> list[x509.Certificate]:
    """
    Walk from ``leaf`` up through issuers found in ``pool``.

    Each link must match by name and verify by signature. The walk stops at a
    self-signed certificate or when no issuer is available.
    """
    candidates = list(pool)
    chain = [leaf]
    current = leaf
    while current.issuer != current.subject:
        issuer = None
        for cert in candidates:
            if cert in chain or cert.subject != current.issuer:
                continue
            try:
                current.verify_directly_issued_by(cert)
            except (ValueError, TypeError, InvalidSignature):
                continue
            issuer = cert
            break
        if issuer is None:
            break
        chain.append(issuer)
        current = issuer
    return chain


class KeyManager:
    """
    Issues and persists node identities.

    Algorithm parameters come from ``KeysConfig``; the defaults match what a
    production network expects (RSA 3072 signing, RSA 4096 TLS, P-384 EC).
    """

    def __init__(self, config: KeysConfig | None = None) -> None:
        self._config = config or KeysConfig()
        self._logger = logger.bind(system="keys")
        self.signing_role = SigningRole(key_size=self._config.signing_key_size)
        self.agreement_role = AgreementRole(curve=self._config.ec_curve)
        self.tls_role = TLSRole(key_size=self._config.tls_key_size)

    @property
    def validity_days(self) -> int:
        return self._config.validity_years * 365

    # ─── Generation ───────────────────────────────────────────────

    def generate_signing_key(self, node_id: str) -> NodeKey:
        """Self-signed CA certificate ``CN=s-<node>``."""
        _require(node_id, "node_id")
        role = self.signing_role
        private_key = self._new_private_key(role, node_id)
        subject = _name(common_name(role, node_id))
        cert = self._sign(
            role,
            subject=subject,
            issuer=subject,
            public_key=private_key.public_key(),
            signing_key=private_key,
            authority_key=None,
        )
        self._logger.debug(
            "signing_key_generated",
            node_id=node_id,
            serial=cert.serial_number,
        )
        return NodeKey(private_key=private_key, certificate=cert, certificate_chain=[cert])

    def generate_agreement_key(self, node_id: str, signing_key: NodeKey) -> NodeKey:
        return self.generate_ec_key(node_id, AGREEMENT_KEY_PREFIX, signing_key)

    def generate_ec_key(self, node_id: str, prefix: str, signing_key: NodeKey) -> NodeKey:
        """
        EC key certified by the node's signing key.

        The issued certificate is verified against the signing certificate
        before it is returned. A failed verification means the signing key is
        corrupt and raises ``CertificateVerificationError``.
        """
        _require(node_id, "node_id")
        _require(prefix, "prefix")
        if signing_key is None:
            raise MissingArgumentError("signing_key is required")

        role = AgreementRole(curve=self.agreement_role.curve, prefix=prefix)
        private_key = self._new_private_key(role, node_id)
        issuer_cert = signing_key.certificate
        cert = self._sign(
            role,
            subject=_name(common_name(role, node_id)),
            issuer=issuer_cert.subject,
            public_key=private_key.public_key(),
            signing_key=signing_key.private_key,
            authority_key=issuer_cert.public_key(),
        )

        try:
            cert.verify_directly_issued_by(issuer_cert)
        except (ValueError, TypeError, InvalidSignature) as exc:
            self._logger.error(
                "ec_certificate_verification_failed",
                node_id=node_id,
                prefix=prefix,
                issuer=issuer_cert.subject.rfc4514_string(),
            )
            raise CertificateVerificationError(
                f"{prefix}-{node_id} certificate does not verify against "
                f"{issuer_cert.subject.rfc4514_string()}",
                node_id=node_id,
            ) from exc

        self._logger.debug(
            "ec_key_generated",
            node_id=node_id,
            prefix=prefix,
            serial=cert.serial_number,
        )
        return NodeKey(
            private_key=private_key,
            certificate=cert,
            certificate_chain=[cert, issuer_cert],
        )

    def generate_grpc_tls_key(
        self,
        node_id: str,
        distinguished_name: x509.Name | None = None,
    ) -> NodeKey:
        """Self-signed TLS certificate; subject defaults to ``CN=<node>``."""
        _require(node_id, "node_id")
        role = self.tls_role
        private_key = self._new_private_key(role, node_id)
        subject = distinguished_name or _name(common_name(role, node_id))
        cert = self._sign(
            role,
            subject=subject,
            issuer=subject,
            public_key=private_key.public_key(),
            signing_key=private_key,
            authority_key=private_key.public_key(),
        )
        self._logger.debug("tls_key_generated", node_id=node_id, serial=cert.serial_number)
        return NodeKey(private_key=private_key, certificate=cert, certificate_chain=[cert])

    def _new_private_key(self, role: KeyRole, node_id: str) -> PrivateKey:
        try:
            return generate_private_key(role)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            self._logger.error(
                "key_generation_failed",
                node_id=node_id,
                role=type(role).__name__,
                error=str(exc),
            )
            raise KeyGenerationError(
                f"{type(role).__name__} key generation for {node_id} failed: {exc}",
                node_id=node_id,
            ) from exc

    def _sign(
        self,
        role: KeyRole,
        *,
        subject: x509.Name,
        issuer: x509.Name,
        public_key,
        signing_key: PrivateKey,
        authority_key,
    ) -> x509.Certificate:
        now = utc_now()
        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=self.validity_days))
            .add_extension(basic_constraints(role), critical=True)
            .add_extension(key_usage(role), critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key),
                critical=False,
            )
        )
        eku = extended_key_usage(role)
        if eku is not None:
            builder = builder.add_extension(eku, critical=True)
        if authority_key is not None:
            builder = builder.add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(authority_key),
                critical=False,
            )
        try:
            return builder.sign(signing_key, signature_hash(role))
        except (ValueError, TypeError) as exc:
            raise KeyGenerationError(f"certificate signing failed: {exc}") from exc

    # ─── PEM Storage ──────────────────────────────────────────────

    def prepare_node_key_file_paths(
        self,
        node_id: str,
        keys_dir: str | Path,
        prefix: str = SIGNING_KEY_PREFIX,
    ) -> NodeKeyFiles:
        _require(node_id, "node_id")
        _require(keys_dir, "keys_dir")
        role: KeyRole
        if prefix == SIGNING_KEY_PREFIX:
            role = SigningRole(prefix=prefix)
        else:
            role = AgreementRole(prefix=prefix)
        return key_file_paths(role, node_id, keys_dir)

    def prepare_tls_key_file_paths(self, node_id: str, keys_dir: str | Path) -> NodeKeyFiles:
        _require(node_id, "node_id")
        _require(keys_dir, "keys_dir")
        return key_file_paths(TLSRole(), node_id, keys_dir)

    def store_node_key(
        self,
        node_id: str,
        node_key: NodeKey,
        keys_dir: str | Path,
        node_key_files: NodeKeyFiles,
    ) -> NodeKeyFiles:
        """
        Write the private key (PKCS#8 PEM) and the certificate chain.

        An existing certificate file is removed first so the chain is
        replaced rather than appended to.
        """
        _require(node_id, "node_id")
        if node_key is None:
            raise MissingArgumentError("node_key is required")
        keys_dir = Path(keys_dir)
        if not keys_dir.is_dir():
            raise MissingArgumentError(f"keys_dir does not exist: {keys_dir}")

        key_pem = node_key.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        node_key_files.private_key_file.write_bytes(key_pem)

        cert_file = node_key_files.certificate_file
        cert_file.unlink(missing_ok=True)
        cert_file.write_bytes(b"".join(
            cert.public_bytes(serialization.Encoding.PEM)
            for cert in node_key.certificate_chain
        ))

        self._logger.debug(
            "node_key_stored",
            node_id=node_id,
            key_file=str(node_key_files.private_key_file),
            certificate_file=str(cert_file),
            fingerprint=node_key.fingerprint,
        )
        return node_key_files

    def load_node_key(
        self,
        node_id: str,
        keys_dir: str | Path,
        role: KeyRole,
        node_key_files: NodeKeyFiles | None = None,
    ) -> NodeKey:
        """
        Read a stored key back.

        When the key file holds several PEM blocks, the private key is the
        last one. The key type must match ``role``.
        """
        _require(node_id, "node_id")
        files = node_key_files or key_file_paths(role, node_id, keys_dir)

        try:
            key_data = files.private_key_file.read_bytes()
            cert_data = files.certificate_file.read_bytes()
        except OSError as exc:
            raise KeyLoadError(
                f"Cannot read key files for {node_id}: {exc}", node_id=node_id,
            ) from exc

        blocks = split_pem_blocks(key_data)
        if not blocks:
            raise KeyLoadError(
                f"No PEM block in {files.private_key_file}", node_id=node_id,
            )
        try:
            private_key = serialization.load_pem_private_key(blocks[-1], password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyLoadError(
                f"Malformed private key in {files.private_key_file}: {exc}",
                node_id=node_id,
            ) from exc

        if not matches_key_type(role, private_key):
            raise KeyLoadError(
                f"{files.private_key_file} holds a {type(private_key).__name__}, "
                f"not a key for {type(role).__name__}",
                node_id=node_id,
            )

        try:
            certs = x509.load_pem_x509_certificates(cert_data)
        except ValueError as exc:
            raise KeyLoadError(
                f"Malformed certificate in {files.certificate_file}: {exc}",
                node_id=node_id,
            ) from exc

        leaf = certs[0]
        chain = build_certificate_chain(leaf, certs[1:])
        node_key = NodeKey(private_key=private_key, certificate=leaf, certificate_chain=chain)
        self._logger.debug("node_key_loaded", node_id=node_id, fingerprint=node_key.fingerprint)
        return node_key

    def store_signing_key(self, node_id: str, node_key: NodeKey, keys_dir: str | Path) -> NodeKeyFiles:
        files = self.prepare_node_key_file_paths(node_id, keys_dir, SIGNING_KEY_PREFIX)
        return self.store_node_key(node_id, node_key, keys_dir, files)

    def load_signing_key(self, node_id: str, keys_dir: str | Path) -> NodeKey:
        files = self.prepare_node_key_file_paths(node_id, keys_dir, SIGNING_KEY_PREFIX)
        return self.load_node_key(node_id, keys_dir, self.signing_role, files)

    def store_agreement_key(self, node_id: str, node_key: NodeKey, keys_dir: str | Path) -> NodeKeyFiles:
        files = self.prepare_node_key_file_paths(node_id, keys_dir, AGREEMENT_KEY_PREFIX)
        return self.store_node_key(node_id, node_key, keys_dir, files)

    def load_agreement_key(self, node_id: str, keys_dir: str | Path) -> NodeKey:
        files = self.prepare_node_key_file_paths(node_id, keys_dir, AGREEMENT_KEY_PREFIX)
        return self.load_node_key(node_id, keys_dir, self.agreement_role, files)

    def store_tls_key(self, node_id: str, node_key: NodeKey, keys_dir: str | Path) -> NodeKeyFiles:
        files = self.prepare_tls_key_file_paths(node_id, keys_dir)
        return self.store_node_key(node_id, node_key, keys_dir, files)

    def load_tls_key(self, node_id: str, keys_dir: str | Path) -> NodeKey:
        files = self.prepare_tls_key_file_paths(node_id, keys_dir)
        return self.load_node_key(node_id, keys_dir, self.tls_role, files)

    # ─── Composite Generation ─────────────────────────────────────

    def generate_pem_gossip_keys(self, node_id: str, keys_dir: str | Path) -> list[Path]:
        """
        Generate and store a node's signing and agreement PEM keys.

        A no-op returning the existing paths when both key files are present.
        """
        signing_files = self.prepare_node_key_file_paths(node_id, keys_dir, SIGNING_KEY_PREFIX)
        agreement_files = self.prepare_node_key_file_paths(node_id, keys_dir, AGREEMENT_KEY_PREFIX)
        paths = [*signing_files, *agreement_files]
        if all(p.exists() for p in paths):
            self._logger.debug("pem_keys_exist", node_id=node_id)
            return paths

        signing_key = self.generate_signing_key(node_id)
        agreement_key = self.generate_agreement_key(node_id, signing_key)
        self.store_node_key(node_id, signing_key, keys_dir, signing_files)
        self.store_node_key(node_id, agreement_key, keys_dir, agreement_files)
        self._logger.info("pem_gossip_keys_generated", node_id=node_id)
        return paths

    def generate_tls_keys(self, node_id: str, keys_dir: str | Path) -> list[Path]:
        """Generate and store a node's gRPC TLS key unless it already exists."""
        files = self.prepare_tls_key_file_paths(node_id, keys_dir)
        paths = list(files)
        if all(p.exists() for p in paths):
            self._logger.debug("tls_keys_exist", node_id=node_id)
            return paths

        self.store_node_key(node_id, self.generate_grpc_tls_key(node_id), keys_dir, files)
        self._logger.info("tls_keys_generated", node_id=node_id)
        return paths

    # ─── PKCS#12 Keystores ────────────────────────────────────────

    async def generate_private_pfx_keys(
        self,
        keytool: KeystoreTool,
        node_id: str,
        keys_dir: str | Path,
        tmp_dir: str | Path | None = None,
    ) -> Path:
        """
        Build ``private-<node>.pfx`` holding the ``s-``, ``a-`` and ``e-`` keys.

        An existing keystore is left untouched and its path returned.
        Generation happens in a scratch keystore which is copied into
        ``keys_dir`` only once complete.
        """
        if keytool is None:
            raise MissingArgumentError("keytool is required")
        _require(node_id, "node_id")
        keys_dir = _existing_dir(keys_dir)

        private_pfx = keys_dir / f"private-{node_id}.pfx"
        if private_pfx.exists():
            self._logger.info(
                "private_pfx_exists", node_id=node_id, path=str(private_pfx),
            )
            return private_pfx

        with _scratch_dir(tmp_dir) as tmp:
            tmp_pfx = tmp / private_pfx.name
            tmp_pfx.unlink(missing_ok=True)
            signing_alias = f"{SIGNING_KEY_PREFIX}-{node_id}"

            await keytool.gen_key_pair(
                keystore=tmp_pfx,
                alias=signing_alias,
                dname=f"cn={signing_alias}",
                key_alg="rsa",
                sig_alg="SHA384withRSA",
                key_size=self.signing_role.key_size,
                validity_days=self.validity_days,
            )

            for prefix in (AGREEMENT_KEY_PREFIX, ENCRYPTION_KEY_PREFIX):
                alias = f"{prefix}-{node_id}"
                cert_req = tmp / f"{node_id}-cert-req-{prefix}.pfx"
                signed_cert = tmp / f"{node_id}-signed-cert-{prefix}.pfx"

                await keytool.gen_key_pair(
                    keystore=tmp_pfx,
                    alias=alias,
                    dname=f"cn={alias}",
                    key_alg="ec",
                    sig_alg="SHA384withECDSA",
                    group_name=self.agreement_role.curve,
                    validity_days=self.validity_days,
                )
                await keytool.cert_req(keystore=tmp_pfx, alias=alias, out_file=cert_req)
                await keytool.gen_cert(
                    keystore=tmp_pfx,
                    issuer_alias=signing_alias,
                    in_file=cert_req,
                    out_file=signed_cert,
                    validity_days=self.validity_days,
                )
                await keytool.import_cert(keystore=tmp_pfx, alias=alias, cert_file=signed_cert)

            shutil.copyfile(tmp_pfx, private_pfx)

        self._logger.info("private_pfx_generated", node_id=node_id, path=str(private_pfx))
        return private_pfx

    async def update_public_pfx_key(
        self,
        keytool: KeystoreTool,
        node_ids: Sequence[str],
        keys_dir: str | Path,
        tmp_dir: str | Path | None = None,
    ) -> Path:
        """
        Import the public certificates of ``node_ids`` into ``public.pfx``.

        Runs under the public store's single-writer token. Entries already
        present for ``node_ids`` are replaced, so a re-run after a partial
        failure converges. Entries for other nodes are left as they are.
        """
        if keytool is None:
            raise MissingArgumentError("keytool is required")
        if not node_ids:
            raise MissingArgumentError("node_ids is required")
        keys_dir = _existing_dir(keys_dir)
        store = PublicCertificateStore(keys_dir)

        async with store.locked() as public_pfx:
            with _scratch_dir(tmp_dir) as tmp:
                await self._merge_public_certs(keytool, node_ids, keys_dir, public_pfx, tmp)

        self._logger.info("public_pfx_updated", node_ids=list(node_ids), path=str(store.path))
        return store.path

    async def _merge_public_certs(
        self,
        keytool: KeystoreTool,
        node_ids: Sequence[str],
        keys_dir: Path,
        public_pfx: Path,
        tmp: Path,
    ) -> None:
        tmp_public = tmp / public_pfx.name
        tmp_public.unlink(missing_ok=True)
        present: set[str] = set()
        if public_pfx.exists():
            shutil.copyfile(public_pfx, tmp_public)
            present = set(await keytool.list_aliases(keystore=tmp_public))

        replaced: list[str] = []
        for node_id in node_ids:
            private_pfx = keys_dir / f"private-{node_id}.pfx"
            if not private_pfx.exists():
                raise KeyLoadError(
                    f"private pfx {private_pfx} does not exist", node_id=node_id,
                )
            for prefix in PFX_PREFIXES:
                alias = f"{prefix}-{node_id}"
                cert_file = tmp / f"{node_id}-cert-{prefix}.pfx"
                await keytool.export_cert(
                    keystore=private_pfx, alias=alias, out_file=cert_file,
                )
                # keytool refuses to import over an existing trusted entry
                if alias in present:
                    await keytool.delete_entry(keystore=tmp_public, alias=alias)
                    replaced.append(alias)
                await keytool.import_cert(
                    keystore=tmp_public,
                    alias=alias,
                    cert_file=cert_file,
                    no_prompt=True,
                )

        if replaced:
            self._logger.info("public_pfx_entries_replaced", aliases=replaced)
        shutil.copyfile(tmp_public, public_pfx)

    async def remove_public_pfx_key(
        self,
        keytool: KeystoreTool,
        node_ids: Sequence[str],
        keys_dir: str | Path,
    ) -> Path:
        """Delete the listed nodes' aliases from ``public.pfx``; nothing else changes."""
        if keytool is None:
            raise MissingArgumentError("keytool is required")
        keys_dir = _existing_dir(keys_dir)
        store = PublicCertificateStore(keys_dir)

        async with store.locked() as public_pfx:
            if not public_pfx.exists():
                self._logger.warning("public_pfx_missing", path=str(public_pfx))
                return public_pfx
            present = set(await keytool.list_aliases(keystore=public_pfx))
            removed: list[str] = []
            for node_id in node_ids:
                for prefix in PFX_PREFIXES:
                    alias = f"{prefix}-{node_id}"
                    if alias in present:
                        await keytool.delete_entry(keystore=public_pfx, alias=alias)
                        removed.append(alias)

        self._logger.info("public_pfx_entries_removed", aliases=removed)
        return store.path


# ─── Helpers ──────────────────────────────────────────────────────


def _require(value: object, name: str) -> None:
    if not value:
        raise MissingArgumentError(f"{name} is required")


def _existing_dir(keys_dir: str | Path | None) -> Path:
    if not keys_dir:
        raise MissingArgumentError("keys_dir is required")
    path = Path(keys_dir)
    if not path.is_dir():
        raise MissingArgumentError(f"keys_dir does not exist: {path}")
    return path


def _name(cn: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


@contextlib.contextmanager
def _scratch_dir(tmp_dir: str | Path | None) -> Iterator[Path]:
    """
    A fresh temporary directory, created under ``tmp_dir`` when given.

    Cert requests, signed certs and working keystores never outlive the call.
    """
    parent = None
    if tmp_dir:
        parent = Path(tmp_dir)
        parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="netforge-keys-", dir=parent) as tmp:
        yield Path(tmp)
