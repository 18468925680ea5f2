"""
agent_mesh/services/

The running process.

Architecture:
- Events: Everything that happens to an agent, queued in arrival order
- Transport: Requests to the directory, values to peers
- Agent: The single-threaded tick loop that ties them together

A directory service (in memory for tests, Redis lists in deployment)
feeds each agent's inbox; the agent answers through its transport.
"""

from .events import EventQueue, create_event_queue
from .transport import Transport, create_transport
from .agent import MeshAgent, MeshAgentConfig

__all__ = [
    "EventQueue",
    "create_event_queue",
    "Transport",
    "create_transport",
    "MeshAgent",
    "MeshAgentConfig",
]
