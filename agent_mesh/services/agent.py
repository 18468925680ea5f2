"""
agent_mesh/services/agent.py

Mesh agent service.

One process, one thread, one loop. Every tick:
1. Drain the inbox and apply topology events in arrival order
2. Apply value events (forces, state, releases) in arrival order
3. Integrate every active body once
4. Nudge silent consumers when the schedule comes due
5. Send everything queued this tick as one batch, under one timetag

Nothing is shared with another thread, so nothing is locked.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict

import numpy as np
import yaml

from agent_mesh.core.errors import InstanceExhaustedError, StaleIndexError
from agent_mesh.core.physics import PhysicsConfig, PhysicsIntegrator
from agent_mesh.core.session import Session
from agent_mesh.core.signals import OBSERVATION_GROUP, PHYSICS_GROUP, split_field_path
from agent_mesh.core.instances import InstanceEventKind
from agent_mesh.protocols.negotiation import NegotiatorConfig, TopologyNegotiator
from agent_mesh.protocols.provoke import KeepAliveProvoker
from agent_mesh.protocols.roles import Role

from .events import (
    EventQueue,
    LinkAdded,
    LinkRemoved,
    PeerAdded,
    PeerRemoved,
    ValueUpdate,
    create_event_queue,
)
from .transport import Transport, create_transport

logger = logging.getLogger(__name__)


@dataclass
class MeshAgentConfig:
    """Configuration for a mesh agent."""
    # Identity
    name: str = "/proxyAgent.1"
    num_instances: int = 1  # Instance slots per signal group

    # Peers we negotiate with
    upstream_name: str = "/influence.1"
    consumer_class: str = "/agent"

    # Loop behavior
    poll_interval: float = 0.02  # Seconds to sleep after an idle tick
    provoke_interval: int = 100  # Ticks between scheduled provoke passes

    # Queue and transport
    queue_backend: str = "memory"
    redis_url: str = "redis://localhost:6379"

    # Simulation
    seed: int | None = 100
    bootstrap: bool = False  # Allocate every slot at start
    bounds: tuple = (-1.0, 1.0)
    mass: float = 1.0
    gain: float = 0.0001
    damping: float = 0.9
    restitution: float = 0.95

    @classmethod
    def from_env(cls) -> MeshAgentConfig:
        """Create config from AGENT_MESH_* environment variables."""
        seed = os.environ.get("AGENT_MESH_SEED", "100")
        return cls(
            name=os.environ.get("AGENT_MESH_NAME", "/proxyAgent.1"),
            num_instances=int(os.environ.get("AGENT_MESH_NUM_INSTANCES", "1")),
            upstream_name=os.environ.get("AGENT_MESH_UPSTREAM", "/influence.1"),
            consumer_class=os.environ.get("AGENT_MESH_CONSUMER_CLASS", "/agent"),
            poll_interval=float(os.environ.get("AGENT_MESH_POLL_INTERVAL", "0.02")),
            provoke_interval=int(os.environ.get("AGENT_MESH_PROVOKE_INTERVAL", "100")),
            queue_backend=os.environ.get("AGENT_MESH_QUEUE_BACKEND", "memory"),
            redis_url=os.environ.get("AGENT_MESH_REDIS_URL", "redis://localhost:6379"),
            seed=int(seed) if seed else None,
            bootstrap=os.environ.get("AGENT_MESH_BOOTSTRAP", "false").lower() == "true",
        )

    @classmethod
    def from_yaml(cls, path: str) -> MeshAgentConfig:
        """Load config from a YAML mapping; unknown keys are rejected."""
        with open(path) as handle:
            data = yaml.safe_load(handle) or {}

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys in {path}: {sorted(unknown)}")

        if "bounds" in data:
            data["bounds"] = tuple(data["bounds"])
        return cls(**data)

    @property
    def physics(self) -> PhysicsConfig:
        return PhysicsConfig(
            mass=self.mass,
            gain=self.gain,
            damping=self.damping,
            restitution=self.restitution,
            bounds=tuple(self.bounds),
        )

    @property
    def negotiator(self) -> NegotiatorConfig:
        return NegotiatorConfig(
            upstream_name=self.upstream_name,
            consumer_class=self.consumer_class,
        )


class MeshAgent:
    """
    A physics agent that negotiates its own place in the mesh.

    Bodies live in the physics group; every body is mirrored onto an
    observation slot that relays what the upstream field tells it.
    """

    def __init__(
        self,
        config: MeshAgentConfig,
        queue: EventQueue | None = None,
        transport: Transport | None = None,
    ):
        self.config = config
        self.name = config.name

        self.queue = queue or create_event_queue(
            backend=config.queue_backend,
            name=config.name,
            redis_url=config.redis_url,
        )
        self.transport = transport or create_transport(
            backend=config.queue_backend,
            name=config.name,
            redis_url=config.redis_url,
        )

        self.session = Session.create(
            config.name,
            capacity=config.num_instances,
            bounds=tuple(config.bounds),
            rng=np.random.default_rng(config.seed),
        )
        self.integrator = PhysicsIntegrator(self.session.instances, config.physics)

        negotiator_config = config.negotiator
        self.negotiator = TopologyNegotiator(
            self.session,
            self.transport,
            config=negotiator_config,
        )
        self.provoker = KeepAliveProvoker(
            self.session,
            self.transport,
            self.negotiator.classifier,
            interval=config.provoke_interval,
            field_name=negotiator_config.consumer_observation_field,
        )
        self.negotiator.provoker = self.provoker

        # Local input field -> handler
        self._value_handlers: Dict[str, Callable[[str, ValueUpdate, str | None], None]] = {
            "force": self._on_force,
            "position": self._on_state,
            "velocity": self._on_state,
            "acceleration": self._on_state,
        }

        # Status
        self.running = False
        self.ticks = 0
        self.batches_sent = 0
        self.values_dropped = 0
        self.instances_created = 0
        self.instances_released = 0
        self._shut_down = False

        logger.info(f"Agent {self.name} initialized with {config.num_instances} slots")

    # ==================== Startup ====================

    def bootstrap(self, count: int | None = None) -> int:
        """
        Allocate bodies up front, at random positions.

        Raises InstanceExhaustedError if `count` exceeds the free slots.
        """
        count = self.config.num_instances if count is None else count
        for _ in range(count):
            self.session.instances.allocate(PHYSICS_GROUP)
        logger.info(f"Bootstrapped {count} instances")
        return count

    # ==================== Tick ====================

    def tick(self) -> int:
        """
        Run one iteration of the loop.

        Returns the number of inbound events processed.
        """
        self.ticks += 1
        timetag = time.time()

        events = self.queue.drain()
        for event in events:
            if isinstance(event, ValueUpdate):
                self._apply_value(event)
            else:
                self._apply_topology(event)

        # Snapshot after every event of this tick has been applied
        indices = self.session.instances.active_indices(PHYSICS_GROUP)
        self.integrator.step(indices)

        self.provoker.tick(self.ticks)
        self.flush(timetag)
        return len(events)

    def flush(self, timetag: float | None = None) -> int:
        """Send everything queued so far as one batch. Returns the batch size."""
        self._count_instance_events()

        updates = self.session.outbox.drain()
        if not updates:
            return 0

        timetag = time.time() if timetag is None else timetag
        self.transport.send_batch(self.name, updates, timetag)
        self.batches_sent += 1
        return len(updates)

    def _apply_topology(self, event) -> None:
        if isinstance(event, PeerAdded):
            self.negotiator.on_peer_added(event.to_record())
        elif isinstance(event, PeerRemoved):
            self.negotiator.on_peer_removed(event.name)
        elif isinstance(event, LinkAdded):
            self.negotiator.on_link_added(event.to_record())
        elif isinstance(event, LinkRemoved):
            self.negotiator.on_link_removed(event.src, event.dst)
        else:
            logger.error(f"Unknown event type: {type(event).__name__}")

    def _apply_value(self, event: ValueUpdate) -> None:
        _, field_name = split_field_path(event.dst_path)
        handler = self._value_handlers.get(field_name)
        if handler is None:
            logger.debug(f"No handler for {event.dst_path}, dropping value")
            self.values_dropped += 1
            return

        instances = self.session.instances
        try:
            if event.is_release:
                instances.release(PHYSICS_GROUP, event.index)
                return

            arity = instances.groups[PHYSICS_GROUP].fields[field_name].arity
            if np.shape(event.value) != (arity,):
                self.values_dropped += 1
                logger.warning(
                    f"Dropped value for {event.dst_path}[{event.index}]: "
                    f"expected {arity} components, got {np.size(event.value)}"
                )
                return

            origin = split_field_path(event.src_path)[0] if event.src_path else None
            instances.ensure_active(PHYSICS_GROUP, event.index, origin=origin)
            handler(field_name, event, origin)
        except StaleIndexError as e:
            self.values_dropped += 1
            logger.warning(f"Dropped value for {event.dst_path}: {e}")

    def _on_force(self, field_name: str, event: ValueUpdate, origin: str | None) -> None:
        force = np.asarray(event.value, dtype=np.float64)
        self.integrator.apply_force(event.index, force)

        # What the field tells a body, the body tells its consumers
        _, src_field = split_field_path(event.src_path)
        if (
            origin == self.config.upstream_name
            and src_field == self.negotiator.config.upstream_observation_field
        ):
            self.session.instances.update(OBSERVATION_GROUP, "observation", event.index, force)
            self.session.outbox.push("observation", event.index, force)

    def _on_state(self, field_name: str, event: ValueUpdate, origin: str | None) -> None:
        self.session.instances.update(PHYSICS_GROUP, field_name, event.index, event.value)

    def _count_instance_events(self) -> None:
        for event in self.session.instances.drain_events():
            if event.group != PHYSICS_GROUP:
                continue
            if event.kind is InstanceEventKind.CREATED:
                self.instances_created += 1
            else:
                self.instances_released += 1

    # ==================== Service ====================

    def run(self) -> None:
        """
        Run the agent until stopped, then shut down.

        InstanceExhaustedError is fatal: the agent shuts down and re-raises.
        """
        self.running = True
        logger.info(f"Agent {self.name} starting")

        try:
            if self.config.bootstrap:
                self.bootstrap()

            while self.running:
                processed = self.tick()

                # Small sleep if idle to prevent busy-waiting
                if not processed:
                    time.sleep(self.config.poll_interval)

        except KeyboardInterrupt:
            logger.info("Agent interrupted by user")

        except InstanceExhaustedError as e:
            logger.critical(f"Agent {self.name} cannot continue: {e}")
            raise

        finally:
            self.running = False
            self.shutdown()

    def stop(self) -> None:
        """Stop the agent gracefully at the top of the next iteration."""
        self.running = False

    def shutdown(self) -> None:
        """Release every instance, announce it, unlink, and close. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True

        released = self.session.instances.release_all()
        self.flush()
        unlinked = self.negotiator.teardown()
        self.transport.close()

        logger.info(
            f"Agent {self.name} stopped after {self.ticks} ticks: "
            f"{released} instances released, {unlinked} links removed"
        )

    def get_status(self) -> dict[str, Any]:
        """Get current agent status."""
        instances = self.session.instances
        return {
            "name": self.name,
            "running": self.running,
            "ticks": self.ticks,
            "active_instances": len(instances.active_indices(PHYSICS_GROUP)),
            "instances_created": self.instances_created,
            "instances_released": self.instances_released,
            "upstream": self.negotiator.connected_peers(Role.UPSTREAM),
            "consumers": self.negotiator.connected_peers(Role.CONSUMER),
            "batches_sent": self.batches_sent,
            "values_dropped": self.values_dropped,
            "provokes_sent": self.provoker.sent,
            "instances_skipped": self.integrator.skipped,
        }


def run_agent(argv: list[str] | None = None) -> int:
    """
    Run the agent as a standalone service.

    This is the entry point for the agent-mesh command.
    """
    import argparse
    import signal

    parser = argparse.ArgumentParser(description="Mesh Agent")
    parser.add_argument("num_instances", type=int, nargs="?", default=None)
    parser.add_argument("--name", default=None)
    parser.add_argument("--queue-backend", default=None, choices=["memory", "redis"])
    parser.add_argument("--redis-url", default=None)
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--bootstrap", action="store_true")
    parser.add_argument("--seed", type=int, default=None)

    args = parser.parse_args(argv)

    if args.config:
        config = MeshAgentConfig.from_yaml(args.config)
    else:
        config = MeshAgentConfig.from_env()

    # Flags override file and environment
    if args.num_instances is not None:
        config.num_instances = args.num_instances
    if args.name is not None:
        config.name = args.name
    if args.queue_backend is not None:
        config.queue_backend = args.queue_backend
    if args.redis_url is not None:
        config.redis_url = args.redis_url
    if args.seed is not None:
        config.seed = args.seed
    if args.bootstrap:
        config.bootstrap = True

    agent = MeshAgent(config)

    # Handle signals for graceful shutdown
    def signal_handler(sig, frame):
        logger.info("Received shutdown signal")
        agent.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    agent.run()
    return 0


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)
    sys.exit(run_agent())
