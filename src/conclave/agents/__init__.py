"""
Agent-side collaborators: directory lookups, invocation and context protocols.
"""

from .base import (
    AgentInvoker,
    AgentResponse,
    ContextAssembler,
    Directory,
    InMemoryDirectory,
    LayeredContextAssembler,
    Participant,
    Position,
    PositionTier,
    Retriever,
    Synthesizer,
    Team,
)
from .http import HttpAgentInvoker

__all__ = [
    "AgentInvoker",
    "AgentResponse",
    "ContextAssembler",
    "Directory",
    "HttpAgentInvoker",
    "InMemoryDirectory",
    "LayeredContextAssembler",
    "Participant",
    "Position",
    "PositionTier",
    "Retriever",
    "Synthesizer",
    "Team",
]
