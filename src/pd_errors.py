#!/usr/bin/env python3
# src/pd_errors.py
"""
Error taxonomy for the PD member controller.

- Requeue signals: expected flow control, not failures
- Transient errors: health queries and object store calls, retried by the caller
- Domain errors: more diagnostic replacements for a raw underlying error
- Configuration errors: malformed TidbCluster spec input
"""


class PDControllerError(Exception):
    """Base class for all controller errors."""


class RequeueError(PDControllerError):
    """Ask the caller to run the reconciliation pass again soon.

    This is not a failure: it is raised when the controller knows the next
    pass will make progress (workload just created, upgrade just forced).
    """


class PDClientError(PDControllerError):
    """A query against the PD HTTP API failed."""


class NoReadyBackendsError(PDControllerError):
    """The PD service exists but none of its endpoints are ready."""


class StatusSyncError(PDControllerError):
    """Status refresh failed and the fallback diagnosis failed as well."""


class ConflictError(PDControllerError):
    """The stored object changed since it was last read."""


class ConfigurationError(PDControllerError):
    """The TidbCluster spec or a recorded annotation is malformed."""
