"""
Netforge -- Keystore Capability

PKCS#12 keystores are driven through the ``KeystoreTool`` capability set. The
production implementation shells out to the JDK ``keytool`` binary; tests use
an in-memory fake. Every call names its keystore explicitly; the store type and
password are properties of the tool instance.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from netforge.errors import KeytoolError

logger = structlog.get_logger("netforge.keys.keytool")


@runtime_checkable
class KeystoreTool(Protocol):
    async def gen_key_pair(
        self,
        *,
        keystore: Path,
        alias: str,
        dname: str,
        key_alg: str,
        sig_alg: str,
        validity_days: int,
        key_size: int | None = None,
        group_name: str | None = None,
    ) -> None: ...

    async def cert_req(self, *, keystore: Path, alias: str, out_file: Path) -> None: ...

    async def gen_cert(
        self,
        *,
        keystore: Path,
        issuer_alias: str,
        in_file: Path,
        out_file: Path,
        validity_days: int,
    ) -> None: ...

    async def import_cert(
        self,
        *,
        keystore: Path,
        alias: str,
        cert_file: Path,
        no_prompt: bool = False,
    ) -> None: ...

    async def export_cert(self, *, keystore: Path, alias: str, out_file: Path) -> None: ...

    async def delete_entry(self, *, keystore: Path, alias: str) -> None: ...

    async def list_aliases(self, *, keystore: Path) -> list[str]: ...


class Keytool:
    """
    Subprocess-backed ``KeystoreTool``.

    Arguments are passed as an argv list (never through a shell). A non-zero
    exit or a timeout raises ``KeytoolError`` carrying stderr. The store
    password never appears in logs.
    """

    def __init__(
        self,
        binary: str = "keytool",
        store_password: str = "password",
        store_type: str = "pkcs12",
        timeout_s: float = 60.0,
    ) -> None:
        self._binary = binary
        self._password = store_password
        self._store_type = store_type
        self._timeout_s = timeout_s
        self._logger = logger.bind(system="keys.keytool")

    async def gen_key_pair(
        self,
        *,
        keystore: Path,
        alias: str,
        dname: str,
        key_alg: str,
        sig_alg: str,
        validity_days: int,
        key_size: int | None = None,
        group_name: str | None = None,
    ) -> None:
        args = [
            "-genkeypair",
            "-alias", alias,
            *self._store_args(keystore),
            "-dname", dname,
            "-keyalg", key_alg,
            "-sigalg", sig_alg,
            "-validity", str(validity_days),
        ]
        if key_size is not None:
            args += ["-keysize", str(key_size)]
        if group_name is not None:
            args += ["-groupname", group_name]
        await self._run(args)

    async def cert_req(self, *, keystore: Path, alias: str, out_file: Path) -> None:
        await self._run([
            "-certreq",
            "-alias", alias,
            *self._store_args(keystore),
            "-file", str(out_file),
        ])

    async def gen_cert(
        self,
        *,
        keystore: Path,
        issuer_alias: str,
        in_file: Path,
        out_file: Path,
        validity_days: int,
    ) -> None:
        await self._run([
            "-gencert",
            "-alias", issuer_alias,
            *self._store_args(keystore),
            "-validity", str(validity_days),
            "-infile", str(in_file),
            "-outfile", str(out_file),
        ])

    async def import_cert(
        self,
        *,
        keystore: Path,
        alias: str,
        cert_file: Path,
        no_prompt: bool = False,
    ) -> None:
        args = [
            "-importcert",
            "-alias", alias,
            *self._store_args(keystore),
            "-file", str(cert_file),
        ]
        if no_prompt:
            args.append("-noprompt")
        await self._run(args)

    async def export_cert(self, *, keystore: Path, alias: str, out_file: Path) -> None:
        await self._run([
            "-exportcert",
            "-alias", alias,
            *self._store_args(keystore),
            "-file", str(out_file),
        ])

    async def delete_entry(self, *, keystore: Path, alias: str) -> None:
        await self._run([
            "-delete",
            "-alias", alias,
            *self._store_args(keystore),
        ])

    async def list_aliases(self, *, keystore: Path) -> list[str]:
        output = await self._run(["-list", *self._store_args(keystore)])
        return parse_alias_listing(output)

    # ─── Internal ─────────────────────────────────────────────────

    def _store_args(self, keystore: Path) -> list[str]:
        return [
            "-keystore", str(keystore),
            "-storetype", self._store_type,
            "-storepass", self._password,
        ]

    def _redacted(self, args: list[str]) -> list[str]:
        return ["***" if a == self._password else a for a in args]

    async def _run(self, args: list[str]) -> str:
        command = args[0].lstrip("-")
        self._logger.debug("keytool_exec", args=self._redacted(args))

        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise KeytoolError(
                f"keytool binary not found: {self._binary}", command=command,
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout_s,
            )
        except TimeoutError:
            proc.kill()
            await proc.communicate()
            self._logger.warning("keytool_timeout", command=command)
            raise KeytoolError(
                f"keytool {command} timed out after {self._timeout_s}s", command=command,
            ) from None

        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            out = stdout.decode("utf-8", errors="replace").strip()
            self._logger.warning(
                "keytool_failed", command=command, returncode=proc.returncode,
            )
            raise KeytoolError(
                f"keytool {command} exited {proc.returncode}: {err or out}",
                command=command,
                returncode=proc.returncode,
            )

        return stdout.decode("utf-8", errors="replace")


def parse_alias_listing(output: str) -> list[str]:
    """
    Extract aliases from ``keytool -list`` output.

    Entry lines look like ``s-node0, Oct 18, 2026, PrivateKeyEntry,``.
    """
    aliases: list[str] = []
    for line in output.splitlines():
        if "Entry," in line or line.rstrip().endswith("Entry"):
            alias = line.split(",", 1)[0].strip()
            if alias:
                aliases.append(alias)
    return aliases
