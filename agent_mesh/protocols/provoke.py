"""
protocols/provoke.py

Some peers only speak when spoken to.

A consumer that emits an action only after receiving an observation
will wait forever on a link that has never carried one. We break the
silence by sending it a zero observation directly, out of band, once
when the connection is made and then on a coarse schedule in case the
first nudge was lost.

Fire and forget. Nothing is acknowledged, nothing is retried.
"""

from __future__ import annotations
import logging
import numpy as np

from agent_mesh.core.errors import TransportError
from agent_mesh.core.session import Session
from agent_mesh.core.signals import field_path

from .roles import Role, RoleClassifier

logger = logging.getLogger(__name__)


class KeepAliveProvoker:
    """
    Sends out-of-band zero observations to silent-until-fed peers.

    The schedule counts ticks, not seconds.
    """

    def __init__(
        self,
        session: Session,
        transport,
        classifier: RoleClassifier,
        interval: int = 100,
        field_name: str = "observation",
        arity: int = 2
    ):
        if interval < 1:
            raise ValueError(f"provoke interval must be positive, got {interval}")

        self.session = session
        self.transport = transport
        self.classifier = classifier
        self.interval = interval
        self.field_name = field_name
        self.arity = arity
        self.sent = 0

    def provoke(self, peer_name: str) -> bool:
        """
        Nudge one peer. Returns True if a message left.

        A peer that has departed is a silent no-op.
        """
        peer = self.session.directory.lookup(peer_name)
        if peer is None:
            logger.debug(f"Not provoking {peer_name}: no longer in directory")
            return False

        try:
            self.transport.send_direct(
                peer,
                field_path(peer.name, self.field_name),
                np.zeros(self.arity),
            )
        except TransportError as e:
            logger.debug(f"Provoke of {peer_name} dropped: {e}")
            return False

        self.sent += 1
        logger.info(f"Provoked consumer {peer_name}")
        return True

    def provoke_all(self) -> int:
        """Nudge every known consumer-class peer."""
        sent = 0
        for name in self.session.directory.names():
            peer = self.session.directory.lookup(name)
            if self.classifier.classify(peer) is Role.CONSUMER and self.provoke(name):
                sent += 1
        return sent

    def tick(self, tick_count: int) -> int:
        """Run the scheduled pass when the tick count comes due."""
        if tick_count <= 0 or tick_count % self.interval:
            return 0
        return self.provoke_all()

    def __repr__(self) -> str:
        return f"KeepAliveProvoker(interval={self.interval}, sent={self.sent})"
