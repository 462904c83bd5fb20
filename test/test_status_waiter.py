import asyncio
from typing import Any, List

import aiohttp
import pytest
from pydantic import BaseModel

from compute_client.exceptions import (
    ResourceErrorStatusError,
    StatusWaitTimeoutError,
    WaitCancelledError,
)
from compute_client.models import ServerStatus, WaitConfig
from compute_client.status_waiter import StatusWaiter, is_not_found

BUILD = ServerStatus.BUILD
ACTIVE = ServerStatus.ACTIVE


class FakeServer(BaseModel):
    id: str
    status: ServerStatus
    poll: int


class RecordingWaiter(StatusWaiter):
    """Counts the delays taken between polls."""

    def __init__(self, config=None):
        super().__init__(config or WaitConfig(refresh_delay=0.01))
        self.delays: List[float] = []

    async def _wait_before_retry(self, resource_id, delay, cancel_event):
        self.delays.append(delay)
        await super()._wait_before_retry(resource_id, delay, cancel_event)


def http_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(None, (), status=status, message="boom")


def scripted_fetch(*steps: Any):
    """Builds a fetch callback replaying ``steps``; the last step repeats."""
    calls: List[Any] = []

    async def fetch():
        step = steps[min(len(calls), len(steps) - 1)]
        calls.append(step)
        if isinstance(step, BaseException):
            raise step
        return FakeServer(id="srv-1", status=step, poll=len(calls))

    fetch.calls = calls
    return fetch


@pytest.fixture
def waiter() -> RecordingWaiter:
    return RecordingWaiter()


@pytest.mark.asyncio
async def test_returns_first_matching_snapshot(waiter):
    fetch = scripted_fetch(BUILD, BUILD, ACTIVE)

    server = await waiter.wait_for_status("srv-1", ACTIVE, fetch)

    assert server.status == ACTIVE
    assert server.poll == 3
    assert len(fetch.calls) == 3
    assert len(waiter.delays) == 2


@pytest.mark.asyncio
async def test_matches_any_status_in_target_set(waiter):
    fetch = scripted_fetch(BUILD, ServerStatus.SHUTOFF, ACTIVE)

    server = await waiter.wait_for_status("srv-1", [ACTIVE, ServerStatus.SHUTOFF], fetch)

    assert server.status == ServerStatus.SHUTOFF
    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_single_item_set_behaves_like_scalar():
    scalar_waiter, set_waiter = RecordingWaiter(), RecordingWaiter()
    scalar_fetch = scripted_fetch(BUILD, BUILD, ACTIVE)
    set_fetch = scripted_fetch(BUILD, BUILD, ACTIVE)

    scalar = await scalar_waiter.wait_for_status("srv-1", ACTIVE, scalar_fetch)
    from_set = await set_waiter.wait_for_status("srv-1", {ACTIVE}, set_fetch)

    assert scalar == from_set
    assert scalar_fetch.calls == set_fetch.calls
    assert scalar_waiter.delays == set_waiter.delays


@pytest.mark.asyncio
async def test_status_match_is_case_insensitive(waiter):
    fetch = scripted_fetch(ServerStatus("build"), ServerStatus("active"))

    server = await waiter.wait_for_status("srv-1", ACTIVE, fetch)

    assert server.poll == 2


@pytest.mark.asyncio
async def test_rejects_empty_target_set(waiter):
    with pytest.raises(ValueError):
        await waiter.wait_for_status("srv-1", [], scripted_fetch(ACTIVE))


@pytest.mark.asyncio
async def test_rejects_plain_string_targets(waiter):
    with pytest.raises(TypeError):
        await waiter.wait_for_status("srv-1", ["ACTIVE"], scripted_fetch(ACTIVE))


@pytest.mark.asyncio
async def test_rejects_missing_resource_id(waiter):
    with pytest.raises(ValueError):
        await waiter.wait_for_status("", ACTIVE, scripted_fetch(ACTIVE))


@pytest.mark.asyncio
async def test_times_out_with_bounded_number_of_fetches(waiter):
    fetch = scripted_fetch(BUILD)

    with pytest.raises(StatusWaitTimeoutError) as exc_info:
        await waiter.wait_for_status(
            "srv-1", ACTIVE, fetch, refresh_delay=0.05, timeout=0.125
        )

    # floor(0.125 / 0.05) + 1
    assert len(fetch.calls) == 3
    assert exc_info.value.resource_id == "srv-1"
    assert exc_info.value.last_status == BUILD
    assert exc_info.value.timeout == 0.125
    assert isinstance(exc_info.value, TimeoutError)
    assert waiter.delays == pytest.approx([0.05, 0.05, 0.025], abs=0.02)


@pytest.mark.asyncio
async def test_timeout_elapses_before_raising(waiter):
    fetch = scripted_fetch(BUILD)
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(StatusWaitTimeoutError):
        await waiter.wait_for_status(
            "srv-1", ACTIVE, fetch, refresh_delay=0.06, timeout=0.1
        )

    assert loop.time() - started >= 0.1
    # floor(0.1 / 0.06) + 1
    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_refresh_delay_longer_than_timeout_waits_out_timeout(waiter):
    fetch = scripted_fetch(BUILD)
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(StatusWaitTimeoutError):
        await waiter.wait_for_status(
            "srv-1", ACTIVE, fetch, refresh_delay=5, timeout=0.1
        )

    elapsed = loop.time() - started
    assert 0.1 <= elapsed < 1
    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_cancel_event_interrupts_final_wait(waiter):
    fetch = scripted_fetch(BUILD)
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, cancel.set)

    with pytest.raises(WaitCancelledError):
        await waiter.wait_for_status(
            "srv-1", ACTIVE, fetch, refresh_delay=5, timeout=2, cancel_event=cancel
        )

    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_zero_timeout_polls_once(waiter):
    fetch = scripted_fetch(BUILD)

    with pytest.raises(StatusWaitTimeoutError):
        await waiter.wait_for_status("srv-1", ACTIVE, fetch, timeout=0)

    assert len(fetch.calls) == 1
    assert waiter.delays == []


@pytest.mark.asyncio
async def test_deadline_counts_time_spent_fetching(waiter):
    calls = []

    async def slow_fetch():
        calls.append(1)
        await asyncio.sleep(0.1)
        return FakeServer(id="srv-1", status=BUILD, poll=len(calls))

    with pytest.raises(StatusWaitTimeoutError):
        await waiter.wait_for_status(
            "srv-1", ACTIVE, slow_fetch, refresh_delay=0.01, timeout=0.05
        )

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fetch_errors_propagate_without_retry(waiter):
    error = http_error(500)
    fetch = scripted_fetch(BUILD, error, ACTIVE)

    with pytest.raises(aiohttp.ClientResponseError) as exc_info:
        await waiter.wait_for_status("srv-1", ACTIVE, fetch)

    assert exc_info.value is error
    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_not_found_is_an_error_when_waiting_for_status(waiter):
    fetch = scripted_fetch(http_error(404))

    with pytest.raises(aiohttp.ClientResponseError):
        await waiter.wait_for_status("srv-1", ACTIVE, fetch)


@pytest.mark.asyncio
async def test_error_status_fails_fast(waiter):
    fetch = scripted_fetch(BUILD, ServerStatus.ERROR, ACTIVE)

    with pytest.raises(ResourceErrorStatusError) as exc_info:
        await waiter.wait_for_status("srv-1", ACTIVE, fetch)

    assert exc_info.value.status == ServerStatus.ERROR
    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_error_status_can_be_a_target(waiter):
    fetch = scripted_fetch(BUILD, ServerStatus.ERROR)

    server = await waiter.wait_for_status("srv-1", [ACTIVE, ServerStatus.ERROR], fetch)

    assert server.status == ServerStatus.ERROR


@pytest.mark.asyncio
async def test_error_status_fail_fast_can_be_disabled(waiter):
    fetch = scripted_fetch(ServerStatus.ERROR, ACTIVE)

    server = await waiter.wait_for_status(
        "srv-1", ACTIVE, fetch, fail_on_error_status=False
    )

    assert server.poll == 2


@pytest.mark.asyncio
async def test_progress_reports_still_waiting(waiter):
    reports = []
    fetch = scripted_fetch(BUILD, BUILD, ACTIVE)

    await waiter.wait_for_status("srv-1", ACTIVE, fetch, progress=reports.append)

    assert reports == [True, True, False]


@pytest.mark.asyncio
async def test_async_progress_callback_is_awaited(waiter):
    reports = []

    async def on_progress(still_waiting):
        reports.append(still_waiting)

    await waiter.wait_for_status(
        "srv-1", ACTIVE, scripted_fetch(BUILD, ACTIVE), progress=on_progress
    )

    assert reports == [True, False]


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_abort_wait(waiter):
    def on_progress(still_waiting):
        raise RuntimeError("display is gone")

    server = await waiter.wait_for_status(
        "srv-1", ACTIVE, scripted_fetch(BUILD, ACTIVE), progress=on_progress
    )

    assert server.status == ACTIVE


@pytest.mark.asyncio
async def test_cancel_event_aborts_delay_promptly(waiter):
    cancel_event = asyncio.Event()
    fetch = scripted_fetch(BUILD)
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, cancel_event.set)
    started = loop.time()

    with pytest.raises(WaitCancelledError) as exc_info:
        await waiter.wait_for_status(
            "srv-1", ACTIVE, fetch, refresh_delay=10, cancel_event=cancel_event
        )

    assert loop.time() - started < 1
    assert exc_info.value.resource_id == "srv-1"
    assert len(fetch.calls) == 1


@pytest.mark.asyncio
async def test_cancel_event_checked_before_first_fetch(waiter):
    cancel_event = asyncio.Event()
    cancel_event.set()
    fetch = scripted_fetch(ACTIVE)

    with pytest.raises(WaitCancelledError):
        await waiter.wait_for_status("srv-1", ACTIVE, fetch, cancel_event=cancel_event)

    assert fetch.calls == []


@pytest.mark.asyncio
async def test_cancel_event_from_config():
    cancel_event = asyncio.Event()
    cancel_event.set()
    waiter = StatusWaiter(WaitConfig(refresh_delay=0.01, cancel_event=cancel_event))

    with pytest.raises(WaitCancelledError):
        await waiter.wait_for_status("srv-1", ACTIVE, scripted_fetch(ACTIVE))


@pytest.mark.asyncio
async def test_per_call_cancel_event_cancels_only_its_wait():
    waiter = StatusWaiter(WaitConfig(refresh_delay=0.01))
    cancel_first = asyncio.Event()
    first = asyncio.create_task(
        waiter.wait_for_status(
            "srv-1", ACTIVE, scripted_fetch(BUILD), cancel_event=cancel_first
        )
    )
    second = asyncio.create_task(
        waiter.wait_for_status("srv-2", ACTIVE, scripted_fetch(BUILD, BUILD, ACTIVE))
    )

    await asyncio.sleep(0.005)
    cancel_first.set()

    with pytest.raises(WaitCancelledError):
        await first
    assert (await second).status == ACTIVE


@pytest.mark.asyncio
async def test_task_cancellation_interrupts_wait(waiter):
    task = asyncio.create_task(
        waiter.wait_for_status("srv-1", ACTIVE, scripted_fetch(BUILD), refresh_delay=10)
    )
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_polls_are_sequential(waiter):
    in_flight = 0
    max_in_flight = 0
    statuses = iter([BUILD, BUILD, BUILD, ACTIVE])

    async def fetch():
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        await asyncio.sleep(0.005)
        in_flight -= 1
        return FakeServer(id="srv-1", status=next(statuses), poll=0)

    await waiter.wait_for_status("srv-1", ACTIVE, fetch)

    assert max_in_flight == 1


@pytest.mark.asyncio
async def test_many_waits_share_the_event_loop():
    waiter = StatusWaiter(WaitConfig(refresh_delay=0.05, timeout=5))
    fetches = [scripted_fetch(BUILD, BUILD, ACTIVE) for _ in range(50)]
    loop = asyncio.get_running_loop()
    started = loop.time()

    servers = await asyncio.gather(
        *[waiter.wait_for_status(f"srv-{n}", ACTIVE, f) for n, f in enumerate(fetches)]
    )

    assert all(server.status == ACTIVE for server in servers)
    # 50 sequential waits would take at least 5 seconds
    assert loop.time() - started < 2


@pytest.mark.asyncio
async def test_delete_wait_succeeds_on_not_found(waiter):
    fetch = scripted_fetch(ACTIVE, ServerStatus("DELETING"), http_error(404))

    result = await waiter.wait_until_deleted("srv-1", ServerStatus.DELETED, fetch)

    assert result is None
    assert len(fetch.calls) == 3


@pytest.mark.asyncio
async def test_delete_wait_succeeds_on_deleted_status(waiter):
    reports = []
    fetch = scripted_fetch(ACTIVE, ServerStatus.DELETED)

    result = await waiter.wait_until_deleted(
        "srv-1", ServerStatus.DELETED, fetch, progress=reports.append
    )

    assert result is None
    assert len(fetch.calls) == 2
    assert reports == [True, False]


@pytest.mark.asyncio
async def test_delete_wait_propagates_other_errors(waiter):
    error = http_error(403)
    fetch = scripted_fetch(ACTIVE, error, http_error(404))

    with pytest.raises(aiohttp.ClientResponseError) as exc_info:
        await waiter.wait_until_deleted("srv-1", ServerStatus.DELETED, fetch)

    assert exc_info.value is error
    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_delete_wait_does_not_swallow_arbitrary_exceptions(waiter):
    fetch = scripted_fetch(KeyError("status"))

    with pytest.raises(KeyError):
        await waiter.wait_until_deleted("srv-1", ServerStatus.DELETED, fetch)


@pytest.mark.asyncio
async def test_delete_wait_times_out(waiter):
    fetch = scripted_fetch(ACTIVE)

    with pytest.raises(StatusWaitTimeoutError) as exc_info:
        await waiter.wait_until_deleted(
            "srv-1", ServerStatus.DELETED, fetch, refresh_delay=0.05, timeout=0.125
        )

    assert len(fetch.calls) == 3
    assert exc_info.value.last_status == ACTIVE


@pytest.mark.asyncio
async def test_delete_wait_ignores_error_statuses(waiter):
    fetch = scripted_fetch(ServerStatus.ERROR, http_error(404))

    await waiter.wait_until_deleted("srv-1", ServerStatus.DELETED, fetch)

    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_delete_wait_accepts_custom_not_found_predicate(waiter):
    class Gone(Exception):
        pass

    fetch = scripted_fetch(ACTIVE, Gone())

    await waiter.wait_until_deleted(
        "srv-1",
        ServerStatus.DELETED,
        fetch,
        not_found=lambda error: isinstance(error, Gone),
    )

    assert len(fetch.calls) == 2


@pytest.mark.asyncio
async def test_delete_wait_requires_deleted_status(waiter):
    with pytest.raises(TypeError):
        await waiter.wait_until_deleted("srv-1", "DELETED", scripted_fetch(ACTIVE))


def test_is_not_found():
    assert is_not_found(http_error(404))
    assert not is_not_found(http_error(500))
    assert not is_not_found(ValueError("404"))
