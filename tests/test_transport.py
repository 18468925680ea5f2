"""
Tests for agent_mesh/services/transport.py
"""

import numpy as np
import pytest

from agent_mesh.core.errors import TransportError
from agent_mesh.core.session import ConnectionRecord, LinkRecord, PeerRecord
from agent_mesh.core.signals import OutboundUpdate
from agent_mesh.services.events import InMemoryEventQueue, LinkAdded, LinkRemoved
from agent_mesh.services.transport import (
    InMemoryTransport,
    RedisTransport,
    RoutingTable,
    create_transport,
)


class TestRoutingTable:
    """Tests for RoutingTable."""

    def test_instance_preserving_keeps_index(self):
        """Preserving connections carry the index; others collapse to zero."""
        routes = RoutingTable()
        routes.add(ConnectionRecord("/me/position", "/influence.1/node/position", True))
        routes.add(ConnectionRecord("/me/position", "/viewer.1/position", False))

        deliveries = routes.deliveries("/me", [OutboundUpdate("position", 4, np.array([0.1, 0.2]))], 7.0)

        by_device = {device: event for device, event in deliveries}
        assert by_device["/influence.1"].index == 4
        assert by_device["/viewer.1"].index == 0
        assert by_device["/influence.1"].value == [0.1, 0.2]
        assert all(event.timetag == 7.0 for event in by_device.values())

    def test_release_routed_as_null(self):
        """Releases travel along connections like values."""
        routes = RoutingTable()
        routes.add(ConnectionRecord("/me/observation", "/agent.1/observation"))

        [(device, event)] = routes.deliveries("/me", [OutboundUpdate("observation", 2, None)], 1.0)
        assert device == "/agent.1"
        assert event.is_release

    def test_remove_device(self):
        """Forgetting a device drops routes in both directions."""
        routes = RoutingTable()
        routes.add(ConnectionRecord("/me/observation", "/agent.1/observation"))
        routes.remove_device("/agent.1")
        assert routes.deliveries("/me", [OutboundUpdate("observation", 0, np.zeros(2))], 0.0) == []


class TestInMemoryTransport:
    """Tests for InMemoryTransport."""

    def test_records_requests(self):
        """Every request is recorded by kind."""
        transport = InMemoryTransport()
        transport.link(LinkRecord("/a", "/b", ("/a",)))
        transport.unlink("/a", "/b")

        assert transport.requests_of("link") == [("link", "/a", "/b", ("/a",))]
        assert transport.requests_of("unlink") == [("unlink", "/a", "/b")]

    def test_unreachable_peer_raises(self):
        """Requests involving a departed peer fail."""
        transport = InMemoryTransport()
        transport.unreachable.add("/b")

        with pytest.raises(TransportError):
            transport.link(LinkRecord("/a", "/b"))
        with pytest.raises(TransportError):
            transport.connect(ConnectionRecord("/a/x", "/b/y"))
        with pytest.raises(TransportError):
            transport.send_direct(PeerRecord("/b"), "/b/observation", np.zeros(2))

    def test_acknowledges_links(self):
        """With an acknowledgement queue, the transport plays the directory."""
        acks = InMemoryEventQueue()
        transport = InMemoryTransport(acknowledge=acks)
        transport.link(LinkRecord("/a", "/b", ("/a",)))
        transport.unlink("/a", "/b")

        assert acks.drain() == [LinkAdded("/a", "/b", ("/a",)), LinkRemoved("/a", "/b")]

    def test_batches_reach_registered_peers(self):
        """Values flow along connections into peer queues."""
        transport = InMemoryTransport()
        inbox = InMemoryEventQueue()
        transport.register_peer("/agent.1", inbox)
        transport.connect(ConnectionRecord("/me/observation", "/agent.1/observation"))

        transport.send_batch("/me", [OutboundUpdate("observation", 1, np.array([0.5, 0.0]))], 3.0)

        [event] = inbox.drain()
        assert event.dst_path == "/agent.1/observation"
        assert event.src_path == "/me/observation"
        assert event.index == 1
        assert len(transport.batches) == 1

    def test_disconnect_stops_routing(self):
        transport = InMemoryTransport()
        inbox = InMemoryEventQueue()
        connection = ConnectionRecord("/me/observation", "/agent.1/observation")
        transport.register_peer("/agent.1", inbox)
        transport.connect(connection)
        transport.disconnect(connection)

        transport.send_batch("/me", [OutboundUpdate("observation", 0, np.zeros(2))], 0.0)
        assert inbox.get_length() == 0


class TestCreateTransport:
    """Tests for create_transport factory."""

    def test_create_memory_transport(self):
        assert isinstance(create_transport("memory"), InMemoryTransport)

    def test_create_redis_transport_is_lazy(self):
        """No connection is made until the first request."""
        transport = create_transport("redis", name="/me", redis_url="redis://nowhere:1")
        assert isinstance(transport, RedisTransport)
        transport.close()

    def test_create_unknown_backend_raises(self):
        with pytest.raises(ValueError):
            create_transport("smoke-signals")
