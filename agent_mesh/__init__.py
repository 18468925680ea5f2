"""
Agent-Mesh: Self-Negotiating Physics Agents in a Peer Mesh

Each process announces itself to a directory, works out which peers
matter to it, asks for the links and connections its role needs, and
keeps a bank of physics bodies moving for as long as it is linked.
"""

__version__ = "0.1.0"
