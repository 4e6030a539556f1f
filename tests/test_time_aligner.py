from __future__ import annotations

from concurrent.futures import Future

import requests
import responses
from responses import matchers

from authdesk.core.config.models import DEFAULT_TIME_SOURCE_URL
from authdesk.core.time_aligner import TimeAligner, code_window, seconds_remaining
from tests.helpers.fakes import FakeClock


@responses.activate
def test_align_applies_remote_offset():
    responses.add(
        responses.POST,
        DEFAULT_TIME_SOURCE_URL,
        json={"response": {"server_time": "1700000100", "skew_tolerance_seconds": "60"}},
        match=[matchers.urlencoded_params_matcher({"steamid": "0"})],
    )
    clock = FakeClock(1_700_000_000.0)
    a = TimeAligner(local_clock=clock.time)

    assert a.align() == 100
    assert a.now() == 1_700_000_100
    clock.advance(7)
    assert a.now() == 1_700_000_107
    st = a.status()
    assert st.aligned and st.last_ok and st.last_error is None


def test_now_without_alignment_is_local_time():
    clock = FakeClock(1_700_000_042.9)
    a = TimeAligner(local_clock=clock.time)
    assert a.now() == 1_700_000_042
    assert a.status().aligned is False


@responses.activate
def test_failed_align_keeps_previous_offset():
    responses.add(responses.POST, DEFAULT_TIME_SOURCE_URL, json={"response": {"server_time": 1_700_000_030}})
    clock = FakeClock(1_700_000_000.0)
    a = TimeAligner(local_clock=clock.time)
    assert a.align() == 30

    responses.replace(responses.POST, DEFAULT_TIME_SOURCE_URL, status=503)
    assert a.align() == 30
    assert a.now() == 1_700_000_030
    st = a.status()
    assert st.aligned is True
    assert st.last_ok is False
    assert "503" in (st.last_error or "")


@responses.activate
def test_network_error_and_malformed_body_never_raise():
    clock = FakeClock(1_700_000_000.0)
    a = TimeAligner(local_clock=clock.time)

    responses.add(responses.POST, DEFAULT_TIME_SOURCE_URL, body=requests.ConnectionError("offline"))
    assert a.align() == 0
    assert a.status().last_ok is False

    responses.replace(responses.POST, DEFAULT_TIME_SOURCE_URL, json={"unexpected": True})
    assert a.align() == 0

    responses.replace(responses.POST, DEFAULT_TIME_SOURCE_URL, body="not json")
    assert a.align() == 0
    assert a.now() == 1_700_000_000


class _HeldExecutor:
    """Executor whose futures complete only when the test says so."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):  # noqa: ANN001
        fut = Future()
        self.submitted.append((fut, fn))
        return fut


def test_align_async_does_not_overlap():
    a = TimeAligner(local_clock=FakeClock().time)
    ex = _HeldExecutor()

    first = a.align_async(ex)
    assert first is not None
    assert a.is_aligning()
    assert a.align_async(ex) is None
    assert len(ex.submitted) == 1

    first.set_result(0)
    assert not a.is_aligning()
    assert a.align_async(ex) is not None
    assert len(ex.submitted) == 2


def test_code_window_boundaries():
    t = 1_700_000_010 - (1_700_000_010 % 30)
    assert code_window(t) == t // 30
    assert code_window(t + 29) == code_window(t)
    assert code_window(t + 30) == code_window(t) + 1
    assert seconds_remaining(t) == 30
    assert seconds_remaining(t + 29) == 1
    # t sits halfway through a 60 s window
    assert seconds_remaining(t, 60) == 30
    assert seconds_remaining(t + 30, 60) == 60
    assert code_window(t, 60) == t // 60
