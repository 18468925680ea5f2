"""
core/errors.py

Failure taxonomy for the mesh.

Only InstanceExhaustedError is fatal. Everything else is reported,
handled at the boundary where it surfaces, and the tick goes on.
"""

from __future__ import annotations


class MeshError(Exception):
    """Base class for all mesh errors."""


class TransportError(MeshError):
    """A link, connection or send could not reach its peer."""

    def __init__(self, peer: str, message: str = "peer unreachable"):
        self.peer = peer
        super().__init__(f"{peer}: {message}")


class StaleIndexError(MeshError):
    """Instance index outside the reserved range."""

    def __init__(self, group: str, index: int, capacity: int):
        self.group = group
        self.index = index
        self.capacity = capacity
        super().__init__(
            f"instance {index} of '{group}' outside reserved range [0, {capacity})"
        )


class MissingFieldError(MeshError):
    """A field value needed for computation is absent."""

    def __init__(self, group: str, field_name: str, index: int):
        self.group = group
        self.field_name = field_name
        self.index = index
        super().__init__(f"no {field_name} value for instance {index} of '{group}'")


class CounterUnderflowError(MeshError):
    """A reference counter was decremented below zero."""

    def __init__(self, key):
        self.key = key
        super().__init__(f"reference counter {key!r} would go negative")


class ProtocolError(MeshError):
    """Negotiation ordering was violated."""


class InstanceExhaustedError(MeshError):
    """No free instance slot left to allocate."""

    def __init__(self, group: str, capacity: int):
        self.group = group
        self.capacity = capacity
        super().__init__(f"all {capacity} instances of '{group}' are active")
