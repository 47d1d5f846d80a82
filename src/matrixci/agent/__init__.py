from .agent import Agent, AgentPool
from .executor import LocalAgent

__all__ = ["Agent", "AgentPool", "LocalAgent"]
