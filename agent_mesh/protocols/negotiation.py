"""
protocols/negotiation.py

Topology negotiation.

Peers come and go. For each one we care about, we ask for the links
its role needs, wait until the directory confirms every one of them,
then lay the field connections on top. When a link goes away we tear
down what depended on it; when the peer goes away we tear down
everything we asked for without waiting for anyone.

Counting confirmations, rather than flipping flags, is what makes
repeated and out-of-order notifications harmless.

State per peer:
    unknown -> classified -> link-requested -> linked -> connected -> torn-down
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple
import logging

from agent_mesh.core.errors import TransportError
from agent_mesh.core.session import (
    SCOPE_ALL,
    ConnectionRecord,
    LinkRecord,
    PeerRecord,
    Session,
)
from agent_mesh.core.signals import field_path

from .provoke import KeepAliveProvoker
from .roles import Role, RoleClassifier

logger = logging.getLogger(__name__)

LinkKey = Tuple[str, str]


class PeerState(Enum):
    """Negotiation progress for one peer."""
    UNKNOWN = "unknown"
    CLASSIFIED = "classified"
    LINK_REQUESTED = "link-requested"
    LINKED = "linked"
    CONNECTED = "connected"
    TORN_DOWN = "torn-down"


@dataclass
class NegotiatorConfig:
    """Names the negotiator matches and connects."""
    upstream_name: str = "/influence.1"
    consumer_class: str = "/agent"
    upstream_observation_field: str = "node/observation"
    upstream_position_field: str = "node/position"
    consumer_observation_field: str = "observation"
    consumer_action_field: str = "action"


@dataclass
class PeerNegotiation:
    """What we asked of one peer and what we got."""
    peer: PeerRecord
    role: Role
    required: List[LinkRecord]
    state: PeerState = PeerState.CLASSIFIED
    requested: Set[LinkKey] = field(default_factory=set)
    acked: Set[LinkKey] = field(default_factory=set)
    connections: List[Tuple[LinkKey, ConnectionRecord]] = field(default_factory=list)

    @property
    def required_keys(self) -> List[LinkKey]:
        return [link.key for link in self.required]

    @property
    def fully_linked(self) -> bool:
        return all(key in self.acked for key in self.required_keys)


class TopologyNegotiator:
    """
    Turns directory and link notifications into link and connection requests.

    The negotiator is the only writer of the links it asks for, but it
    must accept link removals it never asked for.
    """

    def __init__(
        self,
        session: Session,
        transport,
        config: Optional[NegotiatorConfig] = None,
        provoker: Optional[KeepAliveProvoker] = None
    ):
        self.session = session
        self.transport = transport
        self.config = config or NegotiatorConfig()
        self.classifier = RoleClassifier(
            session.name,
            self.config.upstream_name,
            self.config.consumer_class,
        )
        self.provoker = provoker
        self.negotiations: Dict[str, PeerNegotiation] = {}

    # ==================== Plans ====================

    def _required_links(self, peer: PeerRecord, role: Role) -> List[LinkRecord]:
        me = self.session.name
        if role is Role.UPSTREAM:
            # Only our own instances may flow back to us
            return [
                LinkRecord(me, peer.name),
                LinkRecord(peer.name, me, (me,)),
            ]
        if role is Role.CONSUMER:
            return [
                LinkRecord(me, peer.name, (peer.name,)),
                LinkRecord(peer.name, me, SCOPE_ALL),
            ]
        return []

    def _connection_plan(self, neg: PeerNegotiation) -> List[Tuple[LinkKey, ConnectionRecord]]:
        me = self.session.name
        peer = neg.peer.name
        cfg = self.config

        if neg.role is Role.UPSTREAM:
            return [
                ((peer, me), ConnectionRecord(
                    field_path(peer, cfg.upstream_observation_field),
                    field_path(me, "force"),
                    instance_preserving=True,
                )),
                ((me, peer), ConnectionRecord(
                    field_path(me, "position"),
                    field_path(peer, cfg.upstream_position_field),
                    instance_preserving=True,
                )),
            ]
        if neg.role is Role.CONSUMER:
            return [
                ((me, peer), ConnectionRecord(
                    field_path(me, "observation"),
                    field_path(peer, cfg.consumer_observation_field),
                    instance_preserving=True,
                )),
                ((peer, me), ConnectionRecord(
                    field_path(peer, cfg.consumer_action_field),
                    field_path(me, "force"),
                    instance_preserving=True,
                )),
            ]
        return []

    # ==================== Notifications ====================

    def on_peer_added(self, peer: PeerRecord) -> PeerState:
        """A peer appeared (or re-appeared) in the directory."""
        self.session.directory.add(peer)

        role = self.classifier.classify(peer)
        if role is Role.UNRELATED:
            logger.debug(f"Ignoring unrelated peer {peer.name}")
            return PeerState.UNKNOWN

        neg = self.negotiations.get(peer.name)
        if neg is None or neg.state is PeerState.TORN_DOWN:
            neg = PeerNegotiation(peer, role, self._required_links(peer, role))
            for key in neg.required_keys:
                self.session.counters.reset(("requested",) + key)
                self.session.counters.reset(("link",) + key)
            self.negotiations[peer.name] = neg
            logger.info(f"Peer {peer.name} classified as {role.value}")
        else:
            logger.debug(f"Peer {peer.name} re-announced while {neg.state.value}")

        self._request_links(neg)
        if neg.fully_linked and neg.state is not PeerState.CONNECTED:
            # Links survived a failed connect; try the connections again
            self._establish(neg)
        return neg.state

    def on_link_added(self, link: LinkRecord) -> PeerState:
        """The directory confirmed a link."""
        self.session.links.add_link(link)

        neg = self._negotiation_for(link.src, link.dst)
        if neg is None or link.key not in neg.required_keys:
            logger.debug(f"Ignoring link {link.src} -> {link.dst}")
            return PeerState.UNKNOWN if neg is None else neg.state

        if ("link",) + link.key in self.session.counters:
            logger.debug(f"Duplicate link notification {link.src} -> {link.dst}")
            return neg.state

        self.session.counters.increment(("link",) + link.key)
        neg.acked.add(link.key)
        logger.info(f"Link {link.src} -> {link.dst} established")

        if neg.fully_linked:
            self._establish(neg)
        return neg.state

    def on_link_removed(self, src: str, dst: str) -> PeerState:
        """A link went away, whether we asked for it or not."""
        key = (src, dst)
        dropped = self.session.links.remove_link(src, dst)

        neg = self._negotiation_for(src, dst)
        if neg is None or key not in neg.required_keys:
            return PeerState.UNKNOWN if neg is None else neg.state
        if ("unlinking",) + key in self.session.counters:
            # Echo of our own unlink; a fresh request for the same link stands
            self.session.counters.decrement(("unlinking",) + key)
            if key in neg.acked and key not in neg.requested:
                self.session.counters.decrement(("link",) + key)
                neg.acked.discard(key)
            self._forget_connections(neg, key, dropped)
            return neg.state
        if key not in neg.acked:
            # Refused before confirmation
            neg.requested.discard(key)
            self.session.counters.reset(("requested",) + key)
            return neg.state

        self.session.counters.decrement(("link",) + key)
        neg.acked.discard(key)
        neg.requested.discard(key)
        self.session.counters.reset(("requested",) + key)
        self._forget_connections(neg, key, dropped)

        if neg.state in (PeerState.LINKED, PeerState.CONNECTED):
            self.session.counters.decrement(self._relationship_key(neg))
        if neg.state is not PeerState.TORN_DOWN:
            logger.info(f"Relationship with {neg.peer.name} torn down: link {src} -> {dst} removed")
        neg.state = PeerState.TORN_DOWN

        reverse = (dst, src)
        if reverse in neg.requested:
            self._unlink(neg, reverse)
        return neg.state

    def on_peer_removed(self, name: str) -> PeerState:
        """
        A peer left. Tear down everything we asked of it, right away,
        and release the instances it brought us.
        """
        self.session.directory.remove(name)
        released = self._release_instances_from(name)

        neg = self.negotiations.get(name)
        if neg is None or (neg.state is PeerState.TORN_DOWN and not neg.requested):
            return PeerState.UNKNOWN if neg is None else neg.state

        unlinked = 0
        for key in list(neg.requested):
            self._unlink(neg, key)
            unlinked += 1

        for key in neg.required_keys:
            self._forget_connections(neg, key, self.session.links.remove_link(*key))
            self.session.counters.reset(("link",) + key)
        self.session.counters.reset(self._relationship_key(neg))

        neg.acked.clear()
        neg.state = PeerState.TORN_DOWN
        logger.info(
            f"Peer {name} departed: {unlinked} links removed, "
            f"{released} instances released"
        )
        return neg.state

    def teardown(self) -> int:
        """Unlink everything we asked for. Used on shutdown."""
        unlinked = 0
        for neg in self.negotiations.values():
            for key in list(neg.requested):
                self._unlink(neg, key)
                unlinked += 1
            neg.state = PeerState.TORN_DOWN
        return unlinked

    # ==================== Queries ====================

    def state_of(self, name: str) -> PeerState:
        neg = self.negotiations.get(name)
        return neg.state if neg is not None else PeerState.UNKNOWN

    def connected_peers(self, role: Optional[Role] = None) -> List[str]:
        return [
            name for name, neg in self.negotiations.items()
            if neg.state is PeerState.CONNECTED and (role is None or neg.role is role)
        ]

    # ==================== Internals ====================

    def _negotiation_for(self, src: str, dst: str) -> Optional[PeerNegotiation]:
        me = self.session.name
        if src == me:
            return self.negotiations.get(dst)
        if dst == me:
            return self.negotiations.get(src)
        return None

    @staticmethod
    def _relationship_key(neg: PeerNegotiation) -> Tuple[str, str, str]:
        return ("relationship", neg.role.value, neg.peer.name)

    def _request_links(self, neg: PeerNegotiation) -> None:
        for link in neg.required:
            requested_key = ("requested",) + link.key
            if requested_key in self.session.counters:
                continue

            self.session.counters.increment(requested_key)
            try:
                self.transport.link(link)
            except TransportError as e:
                self.session.counters.decrement(requested_key)
                logger.warning(f"Link request {link.src} -> {link.dst} failed: {e}")
                continue

            neg.requested.add(link.key)
            logger.debug(f"Requested link {link.src} -> {link.dst} scope={link.scope}")

        if neg.requested and neg.state is PeerState.CLASSIFIED:
            neg.state = PeerState.LINK_REQUESTED

    def _establish(self, neg: PeerNegotiation) -> None:
        """Lay the connections of a fully linked relationship, exactly once."""
        if neg.state is PeerState.CONNECTED:
            return

        neg.state = PeerState.LINKED
        relationship = self._relationship_key(neg)
        self.session.counters.increment(relationship)

        made: List[Tuple[LinkKey, ConnectionRecord]] = []
        try:
            for link_key, connection in self._connection_plan(neg):
                if self.session.links.add_connection(link_key, connection):
                    made.append((link_key, connection))
                self.transport.connect(connection)
        except TransportError as e:
            logger.warning(f"Connecting {neg.role.value} {neg.peer.name} failed: {e}")
            self.session.counters.decrement(relationship)
            for link_key, connection in made:
                self.session.links.remove_connection(link_key, connection)
            self._forget_connections(neg, None, [c for _, c in made])
            neg.state = PeerState.LINK_REQUESTED
            return

        neg.connections = made
        neg.state = PeerState.CONNECTED
        logger.info(
            f"Connected {neg.role.value} {neg.peer.name} "
            f"({len(made)} connections)"
        )

        if neg.role is Role.CONSUMER and self.provoker is not None:
            self.provoker.provoke(neg.peer.name)

    def _unlink(self, neg: PeerNegotiation, key: LinkKey) -> None:
        neg.requested.discard(key)
        self.session.counters.reset(("requested",) + key)
        try:
            self.transport.unlink(*key)
        except TransportError as e:
            logger.debug(f"Unlink {key[0]} -> {key[1]} not delivered: {e}")
            return
        self.session.counters.increment(("unlinking",) + key)

    def _forget_connections(
        self,
        neg: PeerNegotiation,
        key: Optional[LinkKey],
        dropped: List[ConnectionRecord]
    ) -> None:
        """Connections under a removed link are gone; stop routing them."""
        for connection in dropped:
            try:
                self.transport.disconnect(connection)
            except TransportError as e:
                logger.debug(f"Disconnect {connection.src_path} not delivered: {e}")
        neg.connections = [(k, c) for k, c in neg.connections if k != key]

    def _release_instances_from(self, origin: str) -> int:
        instances = self.session.instances
        released = 0
        for group in list(instances.groups):
            for index in instances.indices_from(group, origin):
                if instances.release(group, index):
                    released += 1
        return released

    def __repr__(self) -> str:
        states = {name: neg.state.value for name, neg in self.negotiations.items()}
        return f"TopologyNegotiator(self={self.session.name}, peers={states})"
