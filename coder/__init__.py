"""coder: an autonomous coding agent driving a tool-calling loop."""

from .report import AgentError, APIRequestError, ConfigError, IterationLimitExceeded
from .session import Result, Session

__all__ = [
    "AgentError",
    "APIRequestError",
    "ConfigError",
    "IterationLimitExceeded",
    "Result",
    "Session",
]
