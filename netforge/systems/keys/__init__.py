"""
Netforge -- Keys (Certificate Authority)

Issues, stores, loads and rotates each node's signing, agreement and TLS
identities, as PEM files or PKCS#12 keystores.

Public interface:
  KeyManager              -- generation, PEM storage, keystore assembly
  KeyRole                 -- SigningRole | AgreementRole | TLSRole
  NodeKey / NodeKeyFiles  -- key material and where it lives
  KeystoreTool / Keytool  -- keystore capability and its subprocess implementation
  PublicCertificateStore  -- single-writer handle for public.pfx
"""

from netforge.systems.keys.backup import (
    backup_old_pem_keys,
    backup_old_pfx_keys,
    backup_old_tls_keys,
    create_backup_dir,
    prune_backups,
)
from netforge.systems.keys.keytool import KeystoreTool, Keytool
from netforge.systems.keys.manager import KeyManager, build_certificate_chain
from netforge.systems.keys.public_store import PublicCertificateStore
from netforge.systems.keys.roles import AgreementRole, KeyRole, SigningRole, TLSRole
from netforge.systems.keys.types import NodeKey, NodeKeyFiles

__all__ = [
    "KeyManager",
    "build_certificate_chain",
    "KeyRole",
    "SigningRole",
    "AgreementRole",
    "TLSRole",
    "NodeKey",
    "NodeKeyFiles",
    "KeystoreTool",
    "Keytool",
    "PublicCertificateStore",
    "create_backup_dir",
    "backup_old_pfx_keys",
    "backup_old_pem_keys",
    "backup_old_tls_keys",
    "prune_backups",
]
