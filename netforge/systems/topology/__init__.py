"""
Netforge -- Topology

Derives the network's shared address book (``config.txt``) from the node list.

Public interface:
  render_topology       -- node list to NetworkTopology
  assign_account_ids    -- stable account numbering across changes
  get_node_account_map  -- sequential numbering for a fresh network
  NetworkTopology       -- ordered entries, renders config.txt
"""

from netforge.systems.topology.renderer import (
    assign_account_ids,
    get_node_account_map,
    render_topology,
)
from netforge.systems.topology.types import NetworkTopology, NodeEntry

__all__ = [
    "render_topology",
    "assign_account_ids",
    "get_node_account_map",
    "NetworkTopology",
    "NodeEntry",
]
