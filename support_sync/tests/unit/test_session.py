# support_sync/tests/unit/test_session.py
import asyncio
import json
from unittest.mock import Mock

import pytest

from support_sync.domain.events import SessionStarted, SessionStopped
from support_sync.infrastructure.api_client import ApiResponse
from support_sync.infrastructure.event_dispatcher import EventDispatcher
from support_sync.infrastructure.transport import TransportClient
from support_sync.scheduler import PollKind
from support_sync.session import SyncSession


@pytest.fixture
def transport():
    transport = Mock(spec=TransportClient)
    transport.is_connected = False
    return transport


@pytest.fixture
async def session(app_config, api_client, transport, storage):
    session = SyncSession(app_config, api_client=api_client, transport=transport, storage=storage)
    yield session
    await session.stop()


def push_handler(transport, name):
    return getattr(transport, name).call_args_list[0][0][0]


@pytest.mark.asyncio
async def test_start_loads_state_and_starts_polling(session, api_client, transport, identity, make_room):
    api_client.get_rooms.return_value = ApiResponse(True, data=[make_room("r1", unread_count=2)])
    started = []

    async def on_started(event):
        started.append(event)

    session.dispatcher.register(SessionStarted, on_started)

    await session.start(identity)

    assert session.is_active
    assert session.snapshot()["unread_count"] == 2
    assert session.scheduler.active_scope(PollKind.ROOMS) == "u1"
    assert session.scheduler.active_scope(PollKind.NOTIFICATIONS) == "u1"
    assert not session.scheduler.is_running(PollKind.MESSAGES)
    transport.connect.assert_not_called()
    api_client.get_notifications.assert_awaited_once_with("u1")
    assert [event.identity for event in started] == [identity]


@pytest.mark.asyncio
async def test_push_deliveries_feed_the_stores(session, transport, identity, make_room, make_message, make_notification, api_client):
    api_client.get_rooms.return_value = ApiResponse(True, data=[make_room("r1"), make_room("r2")])
    await session.update_features(realtime_enabled=True)
    await session.start(identity)

    transport.connect.assert_awaited_with("u1")
    on_message = push_handler(transport, "on_message")
    on_notification = push_handler(transport, "on_notification")

    api_client.get_messages.return_value = ApiResponse(True, data=[make_message("m0", room_id="r1")])
    await session.set_current_room("r1")

    on_message(make_message("m1", room_id="r1", seconds=5))
    on_message(make_message("m2", room_id="r2", seconds=6))
    on_message(make_message("m2", room_id="r2", seconds=6))
    on_notification(make_notification("n1"))

    snapshot = session.snapshot()
    assert [m.id for m in snapshot["messages"]] == ["m0", "m1"]
    assert session.rooms.unread_count("r1") == 0
    assert session.rooms.unread_count("r2") == 1
    assert [n.id for n in snapshot["toasts"]] == ["n1"]


@pytest.mark.asyncio
async def test_focusing_a_room_marks_it_read(session, api_client, identity, make_room, make_message):
    api_client.get_rooms.return_value = ApiResponse(True, data=[make_room("r1", unread_count=3)])
    api_client.get_messages.return_value = ApiResponse(True, data=[make_message("m1", room_id="r1")])
    await session.start(identity)

    result = await session.set_current_room("r1")

    assert result.success
    assert session.rooms.unread_count("r1") == 0
    assert session.scheduler.active_scope(PollKind.MESSAGES) == "r1"
    api_client.mark_room_read.assert_awaited_once_with("r1")

    await session.set_current_room(None)
    assert not session.scheduler.is_running(PollKind.MESSAGES)
    assert session.snapshot()["messages"] == []


@pytest.mark.asyncio
async def test_switching_rooms_drops_the_stale_history(session, api_client, identity, make_message):
    release = asyncio.Event()

    async def get_messages(room_id, limit=50, offset=0):
        if room_id == "R1":
            await release.wait()
        return ApiResponse(True, data=[make_message(f"{room_id}-m", room_id=room_id)])

    api_client.get_messages.side_effect = get_messages
    await session.start(identity)

    first = asyncio.create_task(session.set_current_room("R1"))
    await asyncio.sleep(0)
    await session.set_current_room("R2")
    release.set()
    await first

    assert session.scheduler.running[PollKind.MESSAGES] == "R2"
    assert [m.id for m in session.messages.messages] == ["R2-m"]


@pytest.mark.asyncio
async def test_send_message_updates_preview(session, api_client, identity, make_room, make_message):
    api_client.get_rooms.return_value = ApiResponse(True, data=[make_room("r1")])
    await session.start(identity)

    assert not (await session.send_message("hi")).success

    await session.set_current_room("r1")
    api_client.send_message.return_value = ApiResponse(
        True, data=make_message("srv-1", room_id="r1", sender_id="u1", content="hi", seconds=30)
    )
    result = await session.send_message("hi")

    assert result.success
    assert session.rooms.get_room("r1").last_message == "hi"
    assert session.rooms.unread_count("r1") == 0


@pytest.mark.asyncio
async def test_feature_changes_are_persisted_and_applied(session, identity, memory_keyring):
    await session.start(identity)

    await session.update_features(chat_enabled=False, notification_poll_interval=30)

    assert not session.scheduler.is_running(PollKind.ROOMS)
    assert session.scheduler.interval(PollKind.NOTIFICATIONS) == 30
    stored = json.loads(memory_keyring[("support-sync-test", "feature_config")])
    assert stored["chat_enabled"] is False

    await session.reset_features()

    assert session.features.chat_enabled is True
    assert session.scheduler.is_running(PollKind.ROOMS)
    assert ("support-sync-test", "feature_config") not in memory_keyring


@pytest.mark.asyncio
async def test_feature_broadcast_reaches_other_sessions(app_config, api_client, storage, identity):
    dispatcher = EventDispatcher()
    first = SyncSession(app_config, api_client=api_client, transport=Mock(spec=TransportClient), storage=storage, dispatcher=dispatcher)
    second = SyncSession(app_config, api_client=api_client, transport=Mock(spec=TransportClient), storage=storage, dispatcher=dispatcher)
    await second.start(identity)

    await first.update_features(notifications_enabled=False)

    assert second.features.notifications_enabled is False
    assert not second.scheduler.is_running(PollKind.NOTIFICATIONS)
    await second.stop()


@pytest.mark.asyncio
async def test_stop_tears_everything_down(session, transport, identity, make_room, make_message, make_notification, api_client):
    api_client.get_rooms.return_value = ApiResponse(True, data=[make_room("r1")])
    stopped = []

    async def on_stopped(event):
        stopped.append(event.identity_id)

    session.dispatcher.register(SessionStopped, on_stopped)
    await session.update_features(realtime_enabled=True)
    await session.start(identity)
    on_message = push_handler(transport, "on_message")
    session.notifications.receive_candidate(make_notification("n1"))

    await session.logout()
    on_message(make_message("late", room_id="r1"))

    assert not session.is_active
    assert session.scheduler.running == {}
    transport.disconnect.assert_awaited()
    assert session.snapshot()["rooms"] == []
    assert session.snapshot()["notifications"] == []
    assert stopped == ["u1"]

    # the toast was surfaced before logout and stays surfaced
    await session.start(identity)
    session.notifications.receive_candidate(make_notification("n1"))
    assert session.notifications.toasts() == []


@pytest.mark.asyncio
async def test_operator_gets_no_notification_polling(session, api_client, operator):
    await session.start(operator)

    assert not session.scheduler.is_running(PollKind.NOTIFICATIONS)
    assert session.scheduler.is_running(PollKind.ROOMS)
    api_client.get_notifications.assert_not_called()


@pytest.mark.asyncio
async def test_subscription_cleanup_stops_the_loop(session, identity):
    await session.start(identity)

    cleanup = await session.subscribe_to_messages("r5")
    assert session.scheduler.active_scope(PollKind.MESSAGES) == "r5"
    await cleanup()
    assert not session.scheduler.is_running(PollKind.MESSAGES)

    cleanup = await session.subscribe_to_room_updates()
    await cleanup()
    assert not session.scheduler.is_running(PollKind.ROOMS)


@pytest.mark.asyncio
async def test_notification_actions(session, identity, make_notification):
    await session.start(identity)
    session.notifications.receive_candidate(
        make_notification("n1", actions=[{"label": "Open", "action": "open_ticket"}])
    )
    runner = Mock()

    assert not session.run_notification_action("n1", 3, runner).success
    assert session.run_notification_action("n1", 0, runner).success

    runner.assert_called_once()
    assert runner.call_args[0][0].action == "open_ticket"
    assert session.notifications.get("n1").read_at is not None
    assert not session.dismiss("missing").success
    assert session.delete_notification("n1").success
    await session.notifications.drain()


@pytest.mark.asyncio
async def test_stop_during_start_leaves_nothing_running(session, api_client, transport, identity, make_room):
    release = asyncio.Event()

    async def slow_rooms():
        await release.wait()
        return ApiResponse(True, data=[make_room("r1")])

    api_client.get_rooms.side_effect = slow_rooms
    started = []

    async def on_started(event):
        started.append(event)

    session.dispatcher.register(SessionStarted, on_started)
    await session.update_features(realtime_enabled=True)

    starting = asyncio.create_task(session.start(identity))
    await asyncio.sleep(0)
    await session.stop()
    release.set()
    await starting

    assert not session.is_active
    assert session.scheduler.running == {}
    assert session.snapshot()["rooms"] == []
    transport.connect.assert_not_called()
    api_client.get_notifications.assert_not_called()
    assert started == []


@pytest.mark.asyncio
async def test_feature_change_racing_stop_does_not_restart_loops(session, transport, identity):
    release = asyncio.Event()

    async def slow_connect(identity_id):
        await release.wait()

    await session.start(identity)
    transport.connect.side_effect = slow_connect

    changing = asyncio.create_task(session.update_features(realtime_enabled=True))
    await asyncio.sleep(0)
    await session.stop()
    release.set()
    await changing

    assert session.scheduler.running == {}
    assert not session.is_active


@pytest.mark.asyncio
async def test_leaving_a_room_mid_load_clears_loading(session, api_client, identity, make_message):
    release = asyncio.Event()

    async def slow_history(room_id, limit=50, offset=0):
        await release.wait()
        return ApiResponse(True, data=[make_message("m1", room_id=room_id)])

    api_client.get_messages.side_effect = slow_history
    await session.start(identity)

    pending = asyncio.create_task(session.set_current_room("R1"))
    await asyncio.sleep(0)
    await session.set_current_room(None)
    release.set()
    await pending

    assert session.snapshot()["loading"] is False
    assert session.snapshot()["messages"] == []
