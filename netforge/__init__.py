"""
Netforge -- Consensus Network Provisioning

Allocates per-node cryptographic identities, renders the shared network
topology, and drives node lifecycle operations (deploy, add, update, delete)
against a running deployment without disturbing untouched nodes.
"""

__version__ = "0.4.0"
