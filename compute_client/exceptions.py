from typing import Any, Optional

import aiohttp


class ComputeClientError(Exception):
    """Base class for errors raised by the compute client"""


class StatusWaitTimeoutError(ComputeClientError, TimeoutError):
    def __init__(
        self,
        resource_id: str,
        last_status: Optional[Any],
        timeout: Optional[float],
    ):
        self.resource_id = resource_id
        self.last_status = last_status
        self.timeout = timeout
        super().__init__(
            f"Resource {resource_id} did not reach the expected status within "
            f"{timeout} seconds (last status: {last_status})"
        )


class WaitCancelledError(ComputeClientError):
    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"Wait for resource {resource_id} was cancelled")


class ResourceErrorStatusError(ComputeClientError):
    """Raised when a polled resource lands in an error status it was not waited for"""

    def __init__(self, resource_id: str, status: Any):
        self.resource_id = resource_id
        self.status = status
        super().__init__(f"Resource {resource_id} is in an error state ({status})")


class ResourceNotFoundError(aiohttp.ClientResponseError, ComputeClientError):
    """HTTP 404 from the compute API"""

    @classmethod
    def from_response_error(
        cls, error: aiohttp.ClientResponseError
    ) -> "ResourceNotFoundError":
        return cls(
            error.request_info,
            error.history,
            status=error.status,
            message=error.message,
            headers=error.headers,
        )
