from .session import AgentSession
from .turn import Turn, State

__all__ = ["AgentSession", "Turn", "State"]
