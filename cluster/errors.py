"""Exceptions raised by the cluster-facing components"""
from typing import Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError


class ClusterError(Exception):
    """Base class for Kubernetes API failures; keeps the HTTP status when known"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ClusterConnectionError(ClusterError):
    """Client configuration could not be loaded"""
    pass


class ClusterQueryError(ClusterError):
    """A list/get call against the API server failed"""
    pass


class NotFoundError(ClusterError):
    pass


class MutationError(ClusterError):
    """A write to the API server failed"""
    pass


class UpdateConflictError(MutationError):
    """The object changed between read and write (HTTP 409)"""
    pass


class ConvergenceTimeoutError(ClusterError):
    pass


class WaitCancelledError(ClusterError):
    pass


# The kubernetes client raises ApiException for API responses and urllib3
# errors when the API server cannot be reached at all.
API_ERRORS = (ApiException, HTTPError)


def _status(e: Exception) -> Optional[int]:
    return e.status if isinstance(e, ApiException) else None


def _describe(e: Exception) -> str:
    if isinstance(e, ApiException):
        return f"{e.status} {e.reason}"
    return f"{type(e).__name__}: {e}"


def from_list_error(e: Exception, what: str) -> ClusterError:
    """Map a failed list call to ClusterQueryError"""
    return ClusterQueryError(f"failed to list {what}: {_describe(e)}", status=_status(e))


def from_read_error(e: Exception, what: str) -> ClusterError:
    """Map a failed read to NotFoundError or ClusterQueryError"""
    status = _status(e)
    if status == 404:
        return NotFoundError(f"{what} not found", status=404)
    return ClusterQueryError(f"failed to read {what}: {_describe(e)}", status=status)


def from_write_error(e: Exception, what: str) -> ClusterError:
    """Map a failed write to NotFoundError, UpdateConflictError or MutationError"""
    status = _status(e)
    if status == 404:
        return NotFoundError(f"{what} not found", status=404)
    if status == 409:
        return UpdateConflictError(f"conflict updating {what}: {e.reason}", status=409)
    return MutationError(f"failed to update {what}: {_describe(e)}", status=status)
