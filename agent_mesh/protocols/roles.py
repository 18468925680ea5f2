"""
protocols/roles.py

Who is this peer to us?

Every peer gets exactly one answer from a closed set. The answer
decides which links we ask for and which connections follow.
"""

from __future__ import annotations
from enum import Enum

from agent_mesh.core.session import PeerRecord


class Role(Enum):
    """The relationship a peer can have with this process."""
    UPSTREAM = "upstream"      # Field host: takes our positions, returns observations
    CONSUMER = "consumer"      # Reactive agent: takes observations, returns actions
    UNRELATED = "unrelated"


class RoleClassifier:
    """
    Classification predicate over structured peer records.

    The upstream peer is matched by exact name, consumers by device class.
    A process never classifies itself.
    """

    def __init__(self, self_name: str, upstream_name: str, consumer_class: str):
        self.self_name = self_name
        self.upstream_name = upstream_name
        self.consumer_class = consumer_class

    def classify(self, peer: PeerRecord) -> Role:
        if peer.name == self.self_name:
            return Role.UNRELATED
        if peer.name == self.upstream_name:
            return Role.UPSTREAM
        if peer.device_class == self.consumer_class:
            return Role.CONSUMER
        return Role.UNRELATED

    def __repr__(self) -> str:
        return (
            f"RoleClassifier(upstream={self.upstream_name}, "
            f"consumer_class={self.consumer_class})"
        )
