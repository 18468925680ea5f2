"""
Tests for agent_mesh/services/agent.py

Drives whole ticks against in-memory queues and transports: values
in, physics, batches out, negotiation through to connection, and
shutdown.
"""

import threading

import numpy as np
import pytest

from agent_mesh.core.errors import InstanceExhaustedError
from agent_mesh.core.signals import OBSERVATION_GROUP, PHYSICS_GROUP
from agent_mesh.protocols.negotiation import PeerState
from agent_mesh.services.agent import MeshAgent, MeshAgentConfig, run_agent
from agent_mesh.services.events import (
    InMemoryEventQueue,
    LinkAdded,
    PeerAdded,
    PeerRemoved,
    ValueUpdate,
)
from agent_mesh.services.transport import InMemoryTransport

ME = "/proxyAgent.1"
UPSTREAM = "/influence.1"
CONSUMER = "/agent.1"


def make_agent(num_instances=8, **kwargs):
    """An agent whose transport acknowledges links back into its own inbox."""
    queue = InMemoryEventQueue()
    transport = InMemoryTransport(acknowledge=queue)
    config = MeshAgentConfig(num_instances=num_instances, **kwargs)
    return MeshAgent(config, queue=queue, transport=transport)


def force(index, value, src=f"{CONSUMER}/action"):
    return ValueUpdate(src_path=src, dst_path=f"{ME}/force", index=index, value=value)


# ==================== Values ====================

class TestValueHandling:
    """Values arriving on local inputs."""

    def test_value_activates_released_instance(self):
        """A zero force on a released slot creates a body at rest inside bounds."""
        agent = make_agent()
        agent.queue.push(force(3, [0.0, 0.0]))
        agent.tick()

        instances = agent.session.instances
        assert instances.is_active(PHYSICS_GROUP, 3)
        pos = instances.value(PHYSICS_GROUP, "position", 3)
        assert np.all(pos >= -1.0) and np.all(pos <= 1.0)
        assert np.array_equal(instances.value(PHYSICS_GROUP, "velocity", 3), np.zeros(2))
        assert np.array_equal(instances.value(PHYSICS_GROUP, "acceleration", 3), np.zeros(2))
        assert instances.origin_of(PHYSICS_GROUP, 3) == CONSUMER

    def test_null_value_releases_entity(self):
        """A null force releases every field of the body, mirrors included, and says so."""
        agent = make_agent()
        agent.queue.push(force(3, [0.0, 0.0]))
        agent.tick()

        agent.queue.push(force(3, None))
        agent.tick()

        instances = agent.session.instances
        assert not instances.is_active(PHYSICS_GROUP, 3)
        assert not instances.is_active(OBSERVATION_GROUP, 3)

        releases = sorted(u.field_name for u in agent.transport.batches[-1].updates if u.is_release)
        assert releases == ["acceleration", "observation", "position", "velocity"]

    def test_stale_index_dropped(self):
        """Values outside the reserved range are dropped, not fatal."""
        agent = make_agent(num_instances=4)
        agent.queue.push(force(99, [1.0, 1.0]))
        agent.tick()

        assert agent.values_dropped == 1
        assert agent.session.instances.active_indices(PHYSICS_GROUP) == []

    def test_wrong_arity_dropped(self):
        """A value of the wrong length is dropped and the rest of the tick goes on."""
        agent = make_agent(num_instances=4)
        agent.queue.push(force(0, [0.1, 0.2, 0.3]))
        agent.queue.push(force(1, [0.5, 0.5]))
        agent.tick()

        assert agent.values_dropped == 1
        assert agent.ticks == 1
        assert agent.session.instances.active_indices(PHYSICS_GROUP) == [1]
        assert np.any(agent.session.instances.value(PHYSICS_GROUP, "velocity", 1) != 0)

    def test_unknown_field_dropped(self):
        """Values for fields without a handler are ignored."""
        agent = make_agent()
        agent.queue.push(ValueUpdate("", f"{ME}/observation", 0, [0.0, 0.0]))
        agent.tick()

        assert agent.values_dropped == 1
        assert agent.session.instances.active_indices(PHYSICS_GROUP) == []

    def test_upstream_observation_relayed(self):
        """What the field says about a body is applied as force and passed on."""
        agent = make_agent()
        agent.queue.push(force(2, [0.5, -0.5], src=f"{UPSTREAM}/node/observation"))
        agent.tick()

        instances = agent.session.instances
        assert np.allclose(instances.value(OBSERVATION_GROUP, "observation", 2), [0.5, -0.5])
        assert np.allclose(
            instances.value(PHYSICS_GROUP, "velocity", 2),
            np.array([0.5, -0.5]) * 0.0001 * 0.9,
        )

        relayed = [u for u in agent.transport.batches[-1].updates if u.field_name == "observation"]
        assert len(relayed) == 1
        assert relayed[0].index == 2

    def test_consumer_action_not_relayed(self):
        """Consumer actions move the body but are not observations."""
        agent = make_agent()
        agent.queue.push(force(2, [0.5, -0.5]))
        agent.tick()

        updates = agent.transport.batches[-1].updates
        assert not any(u.field_name == "observation" for u in updates)


# ==================== Tick ====================

class TestTick:
    """Tests for the tick loop."""

    def test_one_batch_per_tick(self):
        """Everything a tick produces leaves together under one timetag."""
        agent = make_agent()
        agent.bootstrap(3)
        agent.tick()

        assert len(agent.transport.batches) == 1
        batch = agent.transport.batches[0]
        assert batch.source == ME
        assert {u.index for u in batch.updates} == {0, 1, 2}
        assert len(batch.updates) == 9

    def test_idle_tick_sends_nothing(self):
        agent = make_agent()
        assert agent.tick() == 0
        assert agent.transport.batches == []

    def test_release_before_snapshot_not_integrated(self):
        """A body released this tick is not integrated this tick."""
        agent = make_agent()
        agent.bootstrap(2)
        agent.queue.push(force(1, None))
        agent.tick()

        assert agent.integrator.skipped == 0
        updates = agent.transport.batches[-1].updates
        assert not any(u.index == 1 and not u.is_release for u in updates)

    def test_consumer_negotiated_and_provoked(self):
        """A consumer gets linked, connected, and nudged within a tick of connecting."""
        agent = make_agent()
        agent.queue.push(PeerAdded(CONSUMER))

        agent.tick()
        assert agent.negotiator.state_of(CONSUMER) is PeerState.LINK_REQUESTED

        agent.tick()
        assert agent.negotiator.state_of(CONSUMER) is PeerState.CONNECTED
        assert agent.transport.direct == [(CONSUMER, f"{CONSUMER}/observation", [0.0, 0.0])]

    def test_scheduled_provoke(self):
        """Connected consumers are nudged again on schedule."""
        agent = make_agent(provoke_interval=3)
        agent.queue.push(PeerAdded(CONSUMER))
        for _ in range(3):
            agent.tick()

        assert len(agent.transport.direct) == 2

    def test_departed_peer_instances_released(self):
        """After a peer departs, no tick touches the instances it brought."""
        agent = make_agent()
        agent.queue.push(PeerAdded(CONSUMER))
        agent.queue.push(force(4, [0.0, 0.0]))
        agent.tick()
        agent.tick()

        agent.queue.push(PeerRemoved(CONSUMER))
        agent.tick()

        assert agent.session.instances.active_indices(PHYSICS_GROUP) == []
        assert agent.negotiator.state_of(CONSUMER) is PeerState.TORN_DOWN

        agent.tick()
        assert agent.session.instances.active_indices(PHYSICS_GROUP) == []

    def test_link_without_peer_ignored(self):
        """A link to a peer we never negotiated with is recorded and nothing more."""
        agent = make_agent()
        agent.queue.push(LinkAdded(CONSUMER, ME))
        agent.tick()
        assert agent.negotiator.state_of(CONSUMER) is PeerState.UNKNOWN
        assert agent.session.links.has_link(CONSUMER, ME)
        assert agent.transport.requests == []


# ==================== Service ====================

class TestService:
    """Startup, shutdown and status."""

    def test_shutdown_releases_everything(self):
        """Shutdown announces every release, withdraws links and closes."""
        agent = make_agent()
        agent.bootstrap(2)
        agent.queue.push(PeerAdded(UPSTREAM))
        agent.tick()

        agent.shutdown()

        releases = [u for u in agent.transport.batches[-1].updates if u.is_release]
        assert {u.index for u in releases} == {0, 1}
        assert len(agent.transport.requests_of("unlink")) == 2
        assert agent.transport.closed
        assert agent.session.instances.active_indices(PHYSICS_GROUP) == []

    def test_shutdown_is_idempotent(self):
        agent = make_agent()
        agent.bootstrap(1)
        agent.shutdown()
        batches = len(agent.transport.batches)
        agent.shutdown()
        assert len(agent.transport.batches) == batches

    def test_bootstrap_exhaustion(self):
        """Asking for more bodies than slots is fatal."""
        agent = make_agent(num_instances=2)
        with pytest.raises(InstanceExhaustedError):
            agent.bootstrap(3)

    def test_run_reraises_exhaustion_after_shutdown(self):
        """A fatal error still shuts the agent down cleanly."""
        agent = make_agent(num_instances=2, bootstrap=True)
        agent.session.instances.ensure_active(PHYSICS_GROUP, 0)

        with pytest.raises(InstanceExhaustedError):
            agent.run()

        assert agent.transport.closed
        assert not agent.running

    def test_run_until_stopped(self):
        """run() returns after stop() and leaves nothing active."""
        agent = make_agent(bootstrap=True, poll_interval=0.001)
        timer = threading.Timer(0.05, agent.stop)
        timer.start()
        agent.run()
        timer.join()

        assert agent.ticks > 0
        assert agent.transport.closed
        assert agent.session.instances.active_indices(PHYSICS_GROUP) == []

    def test_get_status(self):
        agent = make_agent()
        agent.bootstrap(2)
        agent.tick()

        status = agent.get_status()
        assert status["name"] == ME
        assert status["active_instances"] == 2
        assert status["instances_created"] == 2
        assert status["batches_sent"] == 1
        assert status["consumers"] == []


class TestMeshAgentConfig:
    """Tests for configuration sources."""

    def test_defaults(self):
        config = MeshAgentConfig()
        assert config.name == ME
        assert config.seed == 100
        assert config.provoke_interval == 100
        assert config.physics.gain == 0.0001

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AGENT_MESH_NUM_INSTANCES", "5")
        monkeypatch.setenv("AGENT_MESH_BOOTSTRAP", "true")
        monkeypatch.setenv("AGENT_MESH_NAME", "/proxyAgent.2")

        config = MeshAgentConfig.from_env()
        assert config.num_instances == 5
        assert config.bootstrap
        assert config.name == "/proxyAgent.2"

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text("name: /proxyAgent.3\nnum_instances: 4\nbounds: [-2.0, 2.0]\n")

        config = MeshAgentConfig.from_yaml(str(path))
        assert config.name == "/proxyAgent.3"
        assert config.num_instances == 4
        assert config.physics.bounds == (-2.0, 2.0)

    def test_from_yaml_rejects_unknown_keys(self, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text("warp_speed: 9\n")
        with pytest.raises(ValueError):
            MeshAgentConfig.from_yaml(str(path))

    def test_cli_flags_override(self, monkeypatch):
        """Command-line flags win over the environment."""
        seen = {}

        def fake_run(self):
            seen["config"] = self.config

        monkeypatch.setattr(MeshAgent, "run", fake_run)
        monkeypatch.setattr("signal.signal", lambda *args: None)
        monkeypatch.setenv("AGENT_MESH_NUM_INSTANCES", "5")

        assert run_agent(["3", "--name", "/proxyAgent.4", "--seed", "7", "--bootstrap"]) == 0
        assert seen["config"].num_instances == 3
        assert seen["config"].name == "/proxyAgent.4"
        assert seen["config"].seed == 7
        assert seen["config"].bootstrap
