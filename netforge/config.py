"""
Netforge -- Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides, NETFORGE_ prefix, __ for nesting)

Every tunable of key generation, topology rendering, staging and lifecycle
sequencing lives here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, EnvSettingsSource, SettingsConfigDict

from netforge.primitives.common import AccountId, KeyFormat

# ─── Sub-configs ──────────────────────────────────────────────────


class KeysConfig(BaseModel):
    keys_dir: str = "cache/keys"
    key_format: KeyFormat = KeyFormat.PEM
    validity_years: int = 100
    keystore_password: str = "password"

    # Algorithm parameters per role
    signing_key_size: int = 3072
    tls_key_size: int = 4096
    ec_curve: str = "secp384r1"

    # Number of dated backup directories kept per prefix. None keeps all.
    backup_retention: int | None = None

    @field_validator("validity_years")
    @classmethod
    def _positive_validity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("validity_years must be at least 1")
        return v

    @field_validator("backup_retention")
    @classmethod
    def _non_negative_retention(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            raise ValueError("backup_retention must be >= 0 or null")
        return v


class KeytoolConfig(BaseModel):
    binary: str = "keytool"
    timeout_s: float = 60.0


class NetworkConfig(BaseModel):
    namespace: str = "netforge"
    chain_id: str = "298"
    app_name: str = "HederaNode.jar"

    # First account assigned to a consensus node
    account_shard: int = 0
    account_realm: int = 0
    account_start_num: int = 3

    gossip_port: int = 50111
    default_weight: int = 1

    service_host_template: str = "network-{node_id}-svc.{namespace}.svc.cluster.local"
    pod_name_template: str = "network-{node_id}-0"
    node_label_template: str = "solo.hedera.com/node-name={node_id}"
    haproxy_label: str = "solo.hedera.com/type=haproxy"
    envoy_proxy_label: str = "solo.hedera.com/type=envoy-proxy"

    @property
    def account_start(self) -> AccountId:
        return AccountId(
            shard=self.account_shard,
            realm=self.account_realm,
            num=self.account_start_num,
        )

    def pod_name(self, node_id: str) -> str:
        return self.pod_name_template.format(node_id=node_id, namespace=self.namespace)

    def service_host(self, node_id: str) -> str:
        return self.service_host_template.format(node_id=node_id, namespace=self.namespace)


class StagingConfig(BaseModel):
    root_container: str = "root-container"
    hapi_path: str = "/opt/hgcapp/services-hedera/HapiApp2.0"
    keys_subdir: str = "data/keys"
    config_file_name: str = "config.txt"
    file_owner: str = "hedera:hedera"
    file_mode: str = "0640"
    concurrency: int = 4
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_max_s: float = 10.0

    @field_validator("max_attempts", "concurrency")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @property
    def keys_path(self) -> str:
        return f"{self.hapi_path}/{self.keys_subdir}"


class LifecycleConfig(BaseModel):
    status_max_attempts: int = 120
    status_delay_s: float = 1.0
    freeze_max_attempts: int = 60
    freeze_delay_s: float = 2.0
    pod_ready_max_attempts: int = 300
    pod_ready_delay_s: float = 2.0
    node_start_command: str = "systemctl restart network-node"
    status_command: str = (
        "curl -s http://localhost:9999/metrics | grep platform_PlatformStatus | grep -v \\#"
    )
    parallelism: int = 4
    state_file: str = "state.yaml"

    @field_validator("status_max_attempts", "freeze_max_attempts", "parallelism")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class NetforgeConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="NETFORGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    keys: KeysConfig = Field(default_factory=KeysConfig)
    keytool: KeytoolConfig = Field(default_factory=KeytoolConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> NetforgeConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.

    Precedence, lowest first: model defaults, YAML, ``NETFORGE_<SECTION>__<KEY>``
    env vars, ``overrides``, the explicit env vars below.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # YAML is passed as init kwargs, which pydantic-settings ranks above env
    raw = _deep_merge(raw, EnvSettingsSource(NetforgeConfig)())

    if overrides:
        raw = _deep_merge(raw, overrides)

    # Secrets and the most common knobs are read explicitly so they win over YAML
    if password := os.environ.get("NETFORGE_KEYSTORE_PASSWORD"):
        raw.setdefault("keys", {})["keystore_password"] = password
    if keys_dir := os.environ.get("NETFORGE_KEYS_DIR"):
        raw.setdefault("keys", {})["keys_dir"] = keys_dir
    if namespace := os.environ.get("NETFORGE_NAMESPACE"):
        raw.setdefault("network", {})["namespace"] = namespace
    if keytool := os.environ.get("NETFORGE_KEYTOOL_BINARY"):
        raw.setdefault("keytool", {})["binary"] = keytool

    return NetforgeConfig(**raw)
