"""turnkeeper - runtime core for a tool-calling conversational agent."""

__version__ = "0.1.0"

from turnkeeper.agent import Agent, TurnState
from turnkeeper.config import Config
from turnkeeper.tools import ToolDescriptor, ToolParameter, ToolRegistry

__all__ = [
    "Agent",
    "Config",
    "ToolDescriptor",
    "ToolParameter",
    "ToolRegistry",
    "TurnState",
    "__version__",
]
