"""
Environments that run in process alongside agents.

- influence_field: The upstream peer, answering positions with observations
"""

from .influence_field import InfluenceField, InfluenceConfig

__all__ = ["InfluenceField", "InfluenceConfig"]
