"""
Netforge -- Error Hierarchy

All exceptions raised by the key, topology, staging, pipeline and lifecycle
systems.

Every error carries a ``retryable`` flag. The pipeline only retries steps whose
failure is retryable; everything else halts the operation immediately.

Severity guide:
  MissingArgumentError / IllegalArgumentError   precondition, never retried
  KeyGenerationError / CertificateVerificationError
                                                crypto, identical inputs fail again
  RemoteStagingError                            I/O, retried with backoff
  NodeActivationTimeoutError                    terminal, operator remediation
  PipelineStepError                             wrapper naming the failing step
"""

from __future__ import annotations

from typing import Any


class NetforgeError(RuntimeError):
    """Base for all Netforge errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable
        self.details = details

    def as_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "error": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            d["details"] = {k: str(v) for k, v in self.details.items()}
        return d


# ─── Preconditions ────────────────────────────────────────────────


class MissingArgumentError(NetforgeError):
    """A required argument was not supplied."""


class IllegalArgumentError(NetforgeError):
    """
    An argument was supplied but is not acceptable.

    Raised for duplicate node names on add, unknown nodes on update/delete,
    and attempts to delete the last node of a network.
    """


class KeyFormatConflictError(NetforgeError):
    """
    The requested key format differs from the one the network was created with.

    Format migration is unsupported: a network created with PEM keys stays PEM.
    """


# ─── Key Material ─────────────────────────────────────────────────


class KeyGenerationError(NetforgeError):
    """The cryptographic provider rejected the requested parameters."""


class CertificateVerificationError(NetforgeError):
    """
    A freshly issued certificate did not verify against its issuer.

    Indicates a corrupt signing key. Never retried.
    """


class KeyLoadError(NetforgeError):
    """Key or certificate files are missing, unreadable, or of the wrong algorithm."""


class KeytoolError(NetforgeError):
    """An external keystore command exited non-zero or timed out."""


class PublicStoreLockedError(NetforgeError):
    """The single-writer token for the shared public keystore could not be acquired."""


class NonInterferenceError(NetforgeError):
    """Key files of a node outside the operation's target changed on disk."""


# ─── Cluster I/O ──────────────────────────────────────────────────


class ClusterAccessError(NetforgeError):
    """
    Raised by cluster-access implementations.

    ``retryable=True`` marks transient I/O (connection reset, pod not yet
    reachable). ``retryable=False`` marks a terminal cluster state (pod
    deleted, namespace missing) that retrying cannot fix.
    """

    retryable = True


class RemoteStagingError(NetforgeError):
    """Copying or executing against a pod failed after all retry attempts."""

    retryable = True


class NodeActivationTimeoutError(NetforgeError):
    """A node did not reach the expected status within the polling bound."""


# ─── Pipeline ─────────────────────────────────────────────────────


class PipelineStepError(NetforgeError):
    """
    A pipeline step failed and the pipeline halted.

    Carries the failing step's name, the affected node (if any), the steps
    that completed before the failure, and the nodes each fan-out step had
    already finished, so an operator can judge what to re-run.
    """

    def __init__(
        self,
        step: str,
        cause: BaseException,
        *,
        node_id: str | None = None,
        completed_steps: list[str] | None = None,
        nodes_completed: dict[str, list[str]] | None = None,
    ) -> None:
        where = f"step '{step}'" + (f" (node {node_id})" if node_id else "")
        super().__init__(
            f"{where} failed: {type(cause).__name__}: {cause}",
            retryable=getattr(cause, "retryable", False),
        )
        self.step = step
        self.cause = cause
        self.node_id = node_id
        self.completed_steps = completed_steps or []
        self.nodes_completed = nodes_completed or {}

    def as_dict(self) -> dict[str, Any]:
        d = super().as_dict()
        d["step"] = self.step
        d["node_id"] = self.node_id
        d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        d["completed_steps"] = list(self.completed_steps)
        d["nodes_completed"] = {k: list(v) for k, v in self.nodes_completed.items()}
        return d
