import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import requests

from dispatch.press_sequencer import PressSequencer
from midi.error_tracking import ErrorTracker
from midi.models import ButtonLocation

A = ButtonLocation(1, 0, 0)
B = ButtonLocation(1, 0, 1)
C = ButtonLocation(2, 3, 4)


@pytest.fixture
def sequencer():
    """Sequencer with short delays and a recording HTTP mock."""
    seq = PressSequencer(host="10.0.0.5", port=8888, inter_press_delay=0.05,
                         settle_delay=0.01, post_settle_delay=0.01, errors=ErrorTracker())
    calls = []

    async def fake_post(url):
        calls.append((asyncio.get_running_loop().time(), url))
        return True

    seq._post = AsyncMock(side_effect=fake_post)
    seq.calls = calls
    return seq


async def drain(seq):
    while seq.processing:
        await asyncio.sleep(0.005)


def test_location_url():
    seq = PressSequencer(host="10.0.0.5", port=8888)
    assert seq.location_url(C, "down") == "http://10.0.0.5:8888/api/location/2/3/4/down"


@pytest.mark.asyncio
@pytest.mark.timeout(5)
async def test_presses_run_in_fifo_order(sequencer):
    for button in (A, B, C):
        assert sequencer.enqueue(button)
    await drain(sequencer)
    urls = [url.split("/api/location/")[1] for _, url in sequencer.calls]
    assert urls == ["1/0/0/down", "1/0/0/up", "1/0/1/down", "1/0/1/up", "2/3/4/down", "2/3/4/up"]
    assert sequencer.completed == 3


@pytest.mark.asyncio
@pytest.mark.timeout(5)
async def test_inter_press_spacing(sequencer):
    sequencer.enqueue(A)
    sequencer.enqueue(B)
    await drain(sequencer)
    up_a = sequencer.calls[1][0]
    down_b = sequencer.calls[2][0]
    # Post-settle belongs to the press, the gap is measured from its end
    assert down_b - up_a >= sequencer.post_settle_delay + sequencer.inter_press_delay - 0.005


@pytest.mark.asyncio
@pytest.mark.timeout(5)
async def test_press_queued_while_draining_is_picked_up(sequencer):
    sequencer.enqueue(A)
    await asyncio.sleep(0)
    assert sequencer.processing
    sequencer.enqueue(B)
    await drain(sequencer)
    assert sequencer.completed == 2
    assert len(sequencer.calls) == 4


@pytest.mark.asyncio
@pytest.mark.timeout(5)
async def test_down_failure_falls_back_to_press(sequencer):
    results = iter([False, True])

    async def failing_down(url):
        sequencer.calls.append((0, url))
        return next(results)

    sequencer._post = AsyncMock(side_effect=failing_down)
    sequencer.enqueue(A)
    await drain(sequencer)
    assert [url.rsplit("/", 1)[1] for _, url in sequencer.calls] == ["down", "press"]
    assert sequencer.errors.total == 1


@pytest.mark.asyncio
@pytest.mark.timeout(5)
async def test_up_failure_only_logged(sequencer):
    results = iter([True, False, True, True])

    async def failing_up(url):
        sequencer.calls.append((0, url))
        return next(results)

    sequencer._post = AsyncMock(side_effect=failing_up)
    sequencer.enqueue(A)
    sequencer.enqueue(B)
    await drain(sequencer)
    assert [url.rsplit("/", 1)[1] for _, url in sequencer.calls] == ["down", "up", "down", "up"]
    assert sequencer.errors.total == 0


@pytest.mark.asyncio
async def test_full_queue_drops_oldest():
    seq = PressSequencer(max_queue=2)
    seq._post = AsyncMock(return_value=True)
    seq.processing = True  # keep the drain task from starting
    seq.enqueue(A)
    seq.enqueue(B)
    seq.enqueue(C)
    assert list(seq._queue) == [B, C]
    assert seq.pending == 2


@pytest.mark.asyncio
@pytest.mark.timeout(5)
async def test_close_waits_for_in_flight_press(sequencer):
    for button in (A, B, C):
        sequencer.enqueue(button)
    await asyncio.sleep(0)
    await sequencer.close()
    urls = [url.rsplit("/", 1)[1] for _, url in sequencer.calls]
    assert urls == ["down", "up"]
    assert not sequencer.enqueue(A)


@pytest.mark.asyncio
async def test_post_success_and_failure():
    seq = PressSequencer()
    ok = MagicMock(status_code=204)
    bad = MagicMock(status_code=404)
    with patch.object(seq._session, "post", side_effect=[ok, bad, requests.ConnectionError("refused")]) as mock_post:
        assert await seq._post("http://x/api/location/1/0/0/down")
        assert not await seq._post("http://x/api/location/1/0/0/down")
        assert not await seq._post("http://x/api/location/1/0/0/down")
    mock_post.assert_called_with("http://x/api/location/1/0/0/down", json={}, timeout=seq.timeout)
