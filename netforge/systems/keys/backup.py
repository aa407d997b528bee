"""
Netforge -- Key Backups

Replaced key material is never deleted outright: it is moved into a dated
``unused-<kind>/<YYYYmmdd_HHMMSS>`` directory under the keys directory.
Retention is an explicit policy (``prune_backups``), never inferred from age.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path

import structlog

from netforge.primitives.common import utc_now
from netforge.systems.keys.public_store import PUBLIC_PFX
from netforge.systems.keys.roles import (
    AGREEMENT_KEY_PREFIX,
    SIGNING_KEY_PREFIX,
    AgreementRole,
    SigningRole,
    TLSRole,
    key_file_paths,
)

logger = structlog.get_logger("netforge.keys.backup")

BACKUP_DATE_FORMAT = "%Y%m%d_%H%M%S"
_DATE_DIR = re.compile(r"^\d{8}_\d{6}$")

PFX_BACKUP_PREFIX = "unused-gossip-pfx"
PEM_BACKUP_PREFIX = "unused-gossip-pem"
TLS_BACKUP_PREFIX = "unused-tls"


def create_backup_dir(
    dest_dir: str | Path,
    prefix: str = "backup",
    cur_date: datetime | None = None,
) -> Path:
    """Create (if needed) and return ``dest_dir/prefix/<YYYYmmdd_HHMMSS>``."""
    cur_date = cur_date or utc_now()
    backup_dir = Path(dest_dir) / prefix / cur_date.strftime(BACKUP_DATE_FORMAT)
    backup_dir.mkdir(parents=True, exist_ok=True)
    return backup_dir


def make_backup(file_map: Mapping[Path, Path], remove_old: bool = True) -> list[Path]:
    """Copy each existing source to its destination; missing sources are skipped."""
    backed_up: list[Path] = []
    for src, dest in file_map.items():
        if not src.exists():
            continue
        shutil.copy2(src, dest)
        if remove_old:
            src.unlink()
        backed_up.append(dest)
    return backed_up


def backup_old_pfx_keys(
    node_ids: Iterable[str],
    keys_dir: str | Path,
    cur_date: datetime | None = None,
) -> Path:
    """
    Move the nodes' ``private-<node>.pfx`` files into a dated backup.

    ``public.pfx`` is copied, not moved: it still carries every other node's
    certificates.
    """
    keys_dir = Path(keys_dir)
    backup_dir = create_backup_dir(keys_dir, PFX_BACKUP_PREFIX, cur_date)
    file_map = {
        keys_dir / f"private-{node_id}.pfx": backup_dir / f"private-{node_id}.pfx"
        for node_id in node_ids
    }
    moved = make_backup(file_map, remove_old=True)
    moved += make_backup({keys_dir / PUBLIC_PFX: backup_dir / PUBLIC_PFX}, remove_old=False)
    logger.info("pfx_keys_backed_up", backup_dir=str(backup_dir), files=len(moved))
    return backup_dir


def backup_old_pem_keys(
    node_ids: Iterable[str],
    keys_dir: str | Path,
    cur_date: datetime | None = None,
) -> Path:
    """Move the nodes' signing and agreement PEM files into a dated backup."""
    keys_dir = Path(keys_dir)
    backup_dir = create_backup_dir(keys_dir, PEM_BACKUP_PREFIX, cur_date)
    file_map: dict[Path, Path] = {}
    for node_id in node_ids:
        for role in (
            SigningRole(prefix=SIGNING_KEY_PREFIX),
            AgreementRole(prefix=AGREEMENT_KEY_PREFIX),
        ):
            for path in key_file_paths(role, node_id, keys_dir):
                file_map[path] = backup_dir / path.name
    moved = make_backup(file_map, remove_old=True)
    logger.info("pem_keys_backed_up", backup_dir=str(backup_dir), files=len(moved))
    return backup_dir


def backup_old_tls_keys(
    node_ids: Iterable[str],
    keys_dir: str | Path,
    cur_date: datetime | None = None,
) -> Path:
    """Move the nodes' gRPC TLS key and certificate into a dated backup."""
    keys_dir = Path(keys_dir)
    backup_dir = create_backup_dir(keys_dir, TLS_BACKUP_PREFIX, cur_date)
    file_map: dict[Path, Path] = {}
    for node_id in node_ids:
        for path in key_file_paths(TLSRole(), node_id, keys_dir):
            file_map[path] = backup_dir / path.name
    moved = make_backup(file_map, remove_old=True)
    logger.info("tls_keys_backed_up", backup_dir=str(backup_dir), files=len(moved))
    return backup_dir


def prune_backups(
    keys_dir: str | Path,
    prefix: str,
    keep_last: int | None,
) -> list[Path]:
    """
    Delete the oldest dated directories under ``keys_dir/prefix`` beyond
    ``keep_last``. ``keep_last=None`` keeps everything.

    Returns the removed directories, oldest first.
    """
    if keep_last is None:
        return []

    root = Path(keys_dir) / prefix
    if not root.is_dir():
        return []

    dated = sorted(
        (p for p in root.iterdir() if p.is_dir() and _DATE_DIR.match(p.name)),
        key=lambda p: p.name,
    )
    excess = dated[: max(len(dated) - keep_last, 0)]
    for path in excess:
        shutil.rmtree(path)
    if excess:
        logger.info(
            "backups_pruned",
            prefix=prefix,
            removed=[p.name for p in excess],
            kept=len(dated) - len(excess),
        )
    return excess
