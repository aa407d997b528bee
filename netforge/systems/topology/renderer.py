"""
Netforge -- Topology Renderer

Pure functions from a node list to the network's address book. No owned state:
the previous topology is passed in by the caller so that account numbers stay
stable across add, update and delete.

Account assignment rules:
  - nodes present in the previous topology keep their account id
  - new nodes take the next number above the highest ever assigned, in the
    order they are listed
  - numbers of removed nodes are never handed out again
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from netforge.config import NetworkConfig
from netforge.errors import IllegalArgumentError, MissingArgumentError
from netforge.primitives.common import AccountId
from netforge.systems.topology.types import NetworkTopology, NodeEntry

DEFAULT_ACCOUNT_START = AccountId(shard=0, realm=0, num=3)


def get_node_account_map(
    node_ids: Sequence[str],
    start: AccountId = DEFAULT_ACCOUNT_START,
) -> dict[str, AccountId]:
    """Sequential account ids from ``start``, in iteration order."""
    return {
        node_id: AccountId(shard=start.shard, realm=start.realm, num=start.num + i)
        for i, node_id in enumerate(node_ids)
    }


def assign_account_ids(
    node_ids: Sequence[str],
    previous: NetworkTopology | None = None,
    start: AccountId = DEFAULT_ACCOUNT_START,
    high_water: int | None = None,
) -> dict[str, AccountId]:
    """
    Account ids for ``node_ids`` that never move an existing node.

    ``high_water`` is the highest account number ever assigned in this
    network, including nodes since deleted. Without it, the highest number in
    ``previous`` is used.
    """
    if previous is None:
        return get_node_account_map(node_ids, start)

    known = previous.account_map()
    highest = max((a.num for a in known.values()), default=start.num - 1)
    if high_water is not None:
        highest = max(highest, high_water)

    result: dict[str, AccountId] = {}
    for node_id in node_ids:
        if node_id in known:
            result[node_id] = known[node_id]
        else:
            highest += 1
            result[node_id] = AccountId(shard=start.shard, realm=start.realm, num=highest)
    return result


def render_topology(
    node_ids: Sequence[str],
    *,
    network_config: NetworkConfig | None = None,
    previous: NetworkTopology | None = None,
    high_water: int | None = None,
    addresses: Mapping[str, str] | None = None,
    weights: Mapping[str, int] | None = None,
) -> NetworkTopology:
    """
    Build the address book for ``node_ids``.

    Hosts default to the node's cluster service name; ``addresses`` overrides
    them per node. Weights default to the previous entry's weight, then to
    ``default_weight``. ``node_seq`` is the account number's offset from the
    configured start.
    """
    if not node_ids:
        raise MissingArgumentError("node_ids is required")
    if len(set(node_ids)) != len(node_ids):
        raise IllegalArgumentError(f"duplicate node ids in {list(node_ids)}")

    cfg = network_config or NetworkConfig()
    start = cfg.account_start
    accounts = assign_account_ids(node_ids, previous, start, high_water)
    addresses = addresses or {}
    weights = weights or {}

    entries: list[NodeEntry] = []
    for node_id in node_ids:
        prior = previous.entry(node_id) if previous else None
        host = addresses.get(node_id)
        if host is None:
            host = prior.internal_host if prior else cfg.service_host(node_id)
        weight = weights.get(node_id)
        if weight is None:
            weight = prior.weight if prior else cfg.default_weight
        account = accounts[node_id]
        entries.append(NodeEntry(
            node_id=node_id,
            node_seq=account.num - start.num,
            account_id=account,
            weight=weight,
            internal_host=host,
            internal_port=cfg.gossip_port,
            external_host=host,
            external_port=cfg.gossip_port,
        ))

    return NetworkTopology(chain_id=cfg.chain_id, app_name=cfg.app_name, entries=entries)
