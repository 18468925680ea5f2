"""
Protocols for finding and keeping peers.

- roles: Which peers matter, and how
- negotiation: Links first, connections on top, teardown on loss
- provoke: Nudging peers that only speak when spoken to
"""
