"""
Exception types raised inside the agent loop.

Only tool and reasoning-service failures are exceptions; rejected SQL is a
normal ValidationOutcome and never raised.
"""


class AgentError(Exception):
    """Base class for agent loop errors."""


class ToolExecutionError(AgentError):
    """A tool could not complete. Converted to a ToolOutcome failure by the dispatcher."""


class ReasoningServiceError(AgentError):
    """The reasoning service call failed or returned an unusable response."""
