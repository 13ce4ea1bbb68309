"""Exception taxonomy for the node agent.

Three families, each handled differently by the convergence engine:

- ConfigurationError: the declared spec itself is wrong (malformed
  selectors, ambiguous map owner, unusable bytecode reference). Written
  to the Instance as a status condition and not retried until the spec
  changes.
- TransientError: infrastructure hiccups (daemon unreachable, deadline
  exceeded, object-store conflicts). The invocation ends in Requeue and
  is retried with backoff.
- DaemonError: the loader daemon answered and refused the request.
  Written as NotLoaded / NotUnloaded and retried.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class ConfigurationError(AgentError):
    """Raised when a declared spec cannot be acted upon as written."""


class SelectorError(ConfigurationError):
    """Raised when a label selector is malformed."""


class MapOwnerSelectorError(ConfigurationError):
    """Raised when a map-owner selector is malformed or ambiguous."""


class BytecodeError(ConfigurationError):
    """Raised when a bytecode selector cannot be resolved."""


class TargetError(ConfigurationError):
    """Raised when a spec expands to no usable attach target."""


class TransientError(AgentError):
    """Raised for failures that are expected to clear on retry."""


class DaemonUnavailable(TransientError):
    """Raised when the loader daemon cannot be reached in time."""


class DeadlineExceeded(TransientError):
    """Raised when an invocation runs past its deadline."""


class StoreError(TransientError):
    """Raised when the object store rejects or fails a request."""


class ConflictError(StoreError):
    """Raised on an optimistic-concurrency conflict (stale resourceVersion)."""


class NotFoundError(StoreError):
    """Raised when an object vanished between list and write."""


class DaemonError(AgentError):
    """Raised when the loader daemon reports a failed operation.

    Args:
        message: Error text returned by the daemon.
        status: HTTP status code of the daemon response, if any.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status: int | None = status
