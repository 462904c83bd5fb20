import asyncio
import inspect
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

import aiohttp
from loguru import logger

from compute_client.exceptions import (
    ResourceErrorStatusError,
    StatusWaitTimeoutError,
    WaitCancelledError,
)
from compute_client.models import ResourceStatus, WaitConfig

ResourceT = TypeVar("ResourceT")

FetchResource = Callable[[], Awaitable[ResourceT]]
ProgressSink = Callable[[bool], Any]
TargetStatus = Union[ResourceStatus, Iterable[ResourceStatus]]

_DELETED = object()


def is_not_found(error: BaseException) -> bool:
    """Whether a fetch failure means the resource no longer exists"""
    return isinstance(error, aiohttp.ClientResponseError) and error.status == 404


def _as_status_set(status: TargetStatus) -> Tuple[ResourceStatus, ...]:
    if status is None:
        raise ValueError("status is required")
    if isinstance(status, ResourceStatus):
        return (status,)
    targets = tuple(status)
    if not targets:
        raise ValueError("at least one target status is required")
    for target in targets:
        if not isinstance(target, ResourceStatus):
            raise TypeError(f"Expected a ResourceStatus, got {type(target).__name__}")
    return targets


class StatusWaiter:
    """Polls a resource until it reaches a target status or goes away.

    The waiter knows nothing about the resource beyond its ``status``
    attribute: callers hand it a zero-argument coroutine function that
    performs the GET and returns a fresh snapshot. Defaults for the refresh
    delay, timeout, progress sink and cancel event come from ``config`` and
    can be overridden per call.
    """

    def __init__(self, config: Optional[WaitConfig] = None):
        self.config = config or WaitConfig()
        self.logger = logger

    async def wait_for_status(
        self,
        resource_id: str,
        status: TargetStatus,
        fetch: FetchResource,
        *,
        refresh_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
        fail_on_error_status: Optional[bool] = None,
    ) -> ResourceT:
        """Wait until the fetched resource reports one of the target statuses.

        Returns the first snapshot whose status matches. Raises
        StatusWaitTimeoutError when the deadline passes first,
        ResourceErrorStatusError when the resource lands in an error status
        that is not a target, WaitCancelledError when ``cancel_event`` is set,
        and re-raises anything ``fetch`` raises.
        """
        targets = _as_status_set(status)
        return await self._poll(
            resource_id,
            targets,
            fetch,
            refresh_delay=refresh_delay,
            timeout=timeout,
            progress=progress,
            cancel_event=cancel_event,
            fail_on_error_status=(
                fail_on_error_status
                if fail_on_error_status is not None
                else self.config.fail_on_error_status
            ),
        )

    async def wait_until_deleted(
        self,
        resource_id: str,
        deleted_status: ResourceStatus,
        fetch: FetchResource,
        *,
        refresh_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
        not_found: Callable[[BaseException], bool] = is_not_found,
    ) -> None:
        """Wait until the resource is gone.

        A fetch failure accepted by ``not_found`` (HTTP 404 by default) or a
        snapshot reporting ``deleted_status`` both confirm the deletion. Any
        other fetch failure is re-raised.
        """
        if not isinstance(deleted_status, ResourceStatus):
            raise TypeError("deleted_status must be a ResourceStatus")
        await self._poll(
            resource_id,
            (deleted_status,),
            fetch,
            refresh_delay=refresh_delay,
            timeout=timeout,
            progress=progress,
            cancel_event=cancel_event,
            fail_on_error_status=False,
            not_found=not_found,
        )

    async def _poll(
        self,
        resource_id: str,
        targets: Tuple[ResourceStatus, ...],
        fetch: FetchResource,
        *,
        refresh_delay: Optional[float],
        timeout: Optional[float],
        progress: Optional[ProgressSink],
        cancel_event: Optional[asyncio.Event],
        fail_on_error_status: bool,
        not_found: Optional[Callable[[BaseException], bool]] = None,
    ) -> Any:
        if not resource_id:
            raise ValueError("resource_id is required")

        delay = refresh_delay if refresh_delay is not None else self.config.refresh_delay
        if delay <= 0:
            raise ValueError("refresh_delay must be positive")
        timeout = timeout if timeout is not None else self.config.timeout
        progress = progress if progress is not None else self.config.progress
        cancel_event = cancel_event if cancel_event is not None else self.config.cancel_event

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        last_status = None
        attempt = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise WaitCancelledError(resource_id)

            attempt += 1
            try:
                resource = await fetch()
            except Exception as error:
                if not_found is not None and not_found(error):
                    self.logger.debug(
                        f"Resource {resource_id} not found on attempt {attempt}, treating it as deleted"
                    )
                    await self._report_progress(progress, False)
                    return _DELETED
                raise

            last_status = getattr(resource, "status", None)
            if last_status in targets:
                self.logger.debug(
                    f"Resource {resource_id} reached {last_status} after {attempt} attempt(s)"
                )
                await self._report_progress(progress, False)
                return resource

            if (
                fail_on_error_status
                and isinstance(last_status, ResourceStatus)
                and last_status.is_error
            ):
                raise ResourceErrorStatusError(resource_id, last_status)

            await self._report_progress(progress, True)

            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise StatusWaitTimeoutError(resource_id, last_status, timeout)
                if delay > remaining:
                    # The next poll would land past the deadline, so wait out the rest.
                    await self._wait_before_retry(resource_id, remaining, cancel_event)
                    raise StatusWaitTimeoutError(resource_id, last_status, timeout)

            self.logger.debug(
                f"Resource {resource_id} is {last_status}, waiting {delay:.2f}s before next attempt"
            )
            await self._wait_before_retry(resource_id, delay, cancel_event)

    async def _wait_before_retry(
        self, resource_id: str, delay: float, cancel_event: Optional[asyncio.Event]
    ) -> None:
        """Sleep for ``delay`` seconds, returning early with an error if cancelled"""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise WaitCancelledError(resource_id)

    async def _report_progress(
        self, progress: Optional[ProgressSink], still_waiting: bool
    ) -> None:
        if progress is None:
            return
        try:
            result = progress(still_waiting)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.warning(f"Progress callback failed: {e}")
