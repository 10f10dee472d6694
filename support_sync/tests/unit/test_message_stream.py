# support_sync/tests/unit/test_message_stream.py
import asyncio

import pytest

from support_sync.domain.entities import MessageStatus
from support_sync.domain.reconciler import MergeOutcome
from support_sync.infrastructure.api_client import ApiResponse
from support_sync.stores.base import StoreEvent
from support_sync.stores.message_stream import MessageStream


@pytest.fixture
def stream(api_client, identity):
    stream = MessageStream(api_client, page_size=20, match_window=30)
    stream.bind_identity(identity)
    return stream


@pytest.mark.asyncio
async def test_poll_then_duplicate_push_keeps_one_message(stream, api_client, make_message):
    m1 = make_message("m1", room_id="R1", status=MessageStatus.DELIVERED)
    api_client.get_messages.return_value = ApiResponse(True, data=[m1])

    await stream.load_history("R1")
    outcome = stream.receive_candidate(make_message("m1", room_id="R1"))

    assert outcome is MergeOutcome.UNCHANGED
    assert [m.id for m in stream.messages] == ["m1"]
    assert stream.messages[0].status is MessageStatus.DELIVERED


@pytest.mark.asyncio
async def test_failed_send_keeps_placeholder_marked_failed(stream, api_client):
    stream.focus("R1")
    api_client.send_message.return_value = ApiResponse(False, error="Network is unreachable")

    seen = []
    stream.subscribe(StoreEvent.MESSAGES_CHANGED, lambda data: seen.append(data["messages"]))

    result = await stream.send("R1", "hello")

    assert not result.success
    assert result.error == "Network is unreachable"
    assert seen[0][0].status is MessageStatus.PENDING
    assert len(stream.messages) == 1
    placeholder = stream.messages[0]
    assert placeholder.is_local
    assert placeholder.status is MessageStatus.FAILED
    assert placeholder.content == "hello"


@pytest.mark.asyncio
async def test_stale_poll_is_dropped_after_focus_change(stream, api_client, make_message):
    release = asyncio.Event()

    async def slow_messages(room_id, limit=50, offset=0):
        if room_id == "R1":
            await release.wait()
            return ApiResponse(True, data=[make_message("old", room_id="R1")])
        return ApiResponse(True, data=[make_message("new", room_id="R2")])

    api_client.get_messages.side_effect = slow_messages
    stream.focus("R1")

    pending = asyncio.create_task(stream.poll("R1"))
    await asyncio.sleep(0)
    await stream.load_history("R2")
    release.set()

    assert await pending == []
    assert stream.room_id == "R2"
    assert [m.id for m in stream.messages] == ["new"]


@pytest.mark.asyncio
async def test_successful_send_replaces_placeholder(stream, api_client, make_message):
    stream.focus("R1")
    confirmed = make_message("srv-1", room_id="R1", sender_id="u1", content="hi")
    api_client.send_message.return_value = ApiResponse(True, data=confirmed)

    result = await stream.send("R1", "hi")

    assert result.success
    assert [m.id for m in stream.messages] == ["srv-1"]

    # the push copy of the same message arrives afterwards
    assert stream.receive_candidate(confirmed) is MergeOutcome.UNCHANGED
    assert len(stream.messages) == 1


@pytest.mark.asyncio
async def test_push_before_send_response_still_yields_one_entry(stream, api_client, make_message):
    stream.focus("R1")
    confirmed = make_message("srv-1", room_id="R1", sender_id="u1", content="hi", seconds=1)

    async def send_and_echo(room_id, content):
        stream.receive_candidate(confirmed)
        return ApiResponse(True, data=confirmed)

    api_client.send_message.side_effect = send_and_echo

    await stream.send("R1", "hi")

    assert [m.id for m in stream.messages] == ["srv-1"]


@pytest.mark.asyncio
async def test_empty_message_is_rejected(stream, api_client):
    result = await stream.send("R1", "   ")

    assert not result.success
    api_client.send_message.assert_not_called()


def test_messages_for_other_rooms_are_ignored(stream, make_message):
    stream.focus("R1")

    assert stream.receive_candidate(make_message("m1", room_id="R2")) is None
    assert stream.messages == []


@pytest.mark.asyncio
async def test_history_failure_sets_error(stream, api_client):
    api_client.get_messages.return_value = ApiResponse(False, error="boom")

    result = await stream.load_history("R1")

    assert not result.success
    assert stream.error == "Failed to load messages."
    assert not stream.loading


@pytest.mark.asyncio
async def test_mark_all_read_rolls_back_on_failure(stream, api_client, make_message):
    api_client.get_messages.return_value = ApiResponse(
        True,
        data=[
            make_message("m1", room_id="R1", status=MessageStatus.DELIVERED),
            make_message("m2", room_id="R1", sender_id="u1", seconds=1),
        ],
    )
    await stream.load_history("R1")
    api_client.mark_room_read.return_value = ApiResponse(False, status_code=500, error="oops")

    result = await stream.mark_all_read("R1", "u1")

    assert not result.success
    statuses = {m.id: m.status for m in stream.messages}
    assert statuses == {"m1": MessageStatus.DELIVERED, "m2": MessageStatus.SENT}


@pytest.mark.asyncio
async def test_mark_all_read_skips_own_messages(stream, api_client, make_message):
    api_client.get_messages.return_value = ApiResponse(
        True,
        data=[
            make_message("m1", room_id="R1"),
            make_message("m2", room_id="R1", sender_id="u1", seconds=1),
        ],
    )
    await stream.load_history("R1")

    result = await stream.mark_all_read("R1", "u1")

    assert result.success
    statuses = {m.id: m.status for m in stream.messages}
    assert statuses == {"m1": MessageStatus.READ, "m2": MessageStatus.SENT}
    api_client.mark_room_read.assert_awaited_once_with("R1")


@pytest.mark.asyncio
async def test_leaving_a_room_mid_load_clears_loading(stream, api_client, make_message):
    release = asyncio.Event()

    async def slow_history(room_id, limit=50, offset=0):
        await release.wait()
        return ApiResponse(True, data=[make_message("m1", room_id=room_id)])

    api_client.get_messages.side_effect = slow_history
    states = []
    stream.subscribe(StoreEvent.LOADING_CHANGED, lambda data: states.append(data["loading"]))

    pending = asyncio.create_task(stream.load_history("R1"))
    await asyncio.sleep(0)
    assert stream.loading

    stream.focus(None)
    release.set()
    result = await pending

    assert not result.success
    assert not stream.loading
    assert states == [True, False]
    assert stream.messages == []


@pytest.mark.asyncio
async def test_poll_pages_from_the_newest_known_message(stream, api_client, make_message):
    api_client.get_messages.return_value = ApiResponse(
        True, data=[make_message(f"m{n}", room_id="R1", seconds=n) for n in range(3)]
    )
    await stream.load_history("R1")

    api_client.get_messages.return_value = ApiResponse(
        True, data=[make_message("m2", room_id="R1", seconds=2), make_message("m3", room_id="R1", seconds=3)]
    )
    applied = await stream.poll("R1")

    api_client.get_messages.assert_awaited_with("R1", 20, 2)
    assert [m.id for m in applied] == ["m2", "m3"]
    assert [m.id for m in stream.messages] == ["m0", "m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_poll_of_an_empty_room_starts_at_the_beginning(stream, api_client):
    stream.focus("R1")

    await stream.poll("R1")

    api_client.get_messages.assert_awaited_once_with("R1", 20, 0)
