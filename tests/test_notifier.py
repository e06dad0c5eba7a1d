"""
Tests for ChangeNotifier, its Kafka fan-out and the WebSocket relay
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from relations_service.domain.models import ChangeEvent, Collection, RowChange
from relations_service.kafka_consumer import KafkaConsumerManager
from relations_service.notifier import ChangeNotifier, ColumnFilter
from relations_service.websocket import ConnectionManager


def request_change(to_user="bob", from_user="alice"):
    return RowChange(
        Collection.FRIEND_REQUESTS, "UPSERT", {"id": 1, "from_user": from_user, "to_user": to_user}
    )


class TestColumnFilter:

    def test_parse(self):
        f = ColumnFilter.parse("to_user=eq.bob")
        assert f.column == "to_user"
        assert f.value == "bob"
        assert str(f) == "to_user=eq.bob"

    def test_value_may_contain_separators(self):
        assert ColumnFilter.parse("to_user=eq.a=b.c").value == "a=b.c"

    @pytest.mark.parametrize("text", ["to_user", "to_user=bob", "=eq.bob", "to_user=neq.bob"])
    def test_parse_rejects_unsupported(self, text):
        with pytest.raises(ValueError):
            ColumnFilter.parse(text)

    def test_matches_compares_as_text(self):
        f = ColumnFilter.parse("id=eq.7")
        assert f.matches({"id": 7})
        assert not f.matches({"id": 8})
        assert not f.matches({"other": 7})
        assert not f.matches({"id": None})


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_matching_subscriber_gets_payloadless_event(self, notifier):
        events = []
        notifier.subscribe(Collection.FRIEND_REQUESTS, "to_user=eq.bob", events.append)

        delivered = await notifier.dispatch(request_change(to_user="bob"))

        assert delivered == 1
        assert events == [ChangeEvent(Collection.FRIEND_REQUESTS, "UPSERT", "to_user=eq.bob")]
        assert not hasattr(events[0], "row")

    @pytest.mark.asyncio
    async def test_filter_and_collection_must_match(self, notifier):
        events = []
        notifier.subscribe(Collection.FRIEND_REQUESTS, "to_user=eq.carol", events.append)
        notifier.subscribe("friendships", None, events.append)

        assert await notifier.dispatch(request_change(to_user="bob")) == 0
        assert events == []

    @pytest.mark.asyncio
    async def test_subscriber_without_filter_gets_everything(self, notifier):
        events = []
        notifier.subscribe(Collection.FRIEND_REQUESTS, None, events.append)

        await notifier.dispatch(request_change(to_user="bob"))
        await notifier.dispatch(request_change(to_user="carol"))

        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_unsubscribe(self, notifier):
        events = []
        handle = notifier.subscribe(Collection.FRIEND_REQUESTS, "to_user=eq.bob", events.append)

        assert notifier.unsubscribe(handle) is True
        assert notifier.unsubscribe(handle.id) is False
        assert notifier.subscription_count == 0

        await notifier.dispatch(request_change())
        assert events == []

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_dispatch(self, notifier):
        events = []

        def broken(event):
            raise RuntimeError("render failed")

        notifier.subscribe(Collection.FRIEND_REQUESTS, None, broken)
        notifier.subscribe(Collection.FRIEND_REQUESTS, None, events.append)

        assert await notifier.dispatch(request_change()) == 2
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, notifier):
        callback = AsyncMock()
        notifier.subscribe(Collection.FRIEND_REQUESTS, None, callback)

        await notifier.dispatch(request_change())

        callback.assert_awaited_once()


class TestFanOut:

    @pytest.mark.asyncio
    async def test_publish_dispatches_and_forwards(self):
        publisher = MagicMock()
        publisher.publish_change = AsyncMock()
        notifier = ChangeNotifier(publisher=publisher)
        events = []
        notifier.subscribe(Collection.FRIEND_REQUESTS, None, events.append)
        change = request_change()

        await notifier.publish(change)

        assert len(events) == 1
        publisher.publish_change.assert_awaited_once_with(change, origin=notifier.instance_id)

    @pytest.mark.asyncio
    async def test_receive_skips_own_events(self, notifier):
        events = []
        notifier.subscribe(Collection.FRIEND_REQUESTS, None, events.append)

        delivered = await notifier.receive(
            {"collection": "friend_requests", "event_type": "UPSERT", "row": {}, "origin": notifier.instance_id}
        )

        assert delivered == 0
        assert events == []

    @pytest.mark.asyncio
    async def test_receive_from_other_instance(self, notifier):
        events = []
        notifier.subscribe(Collection.FRIEND_REQUESTS, "to_user=eq.bob", events.append)

        delivered = await notifier.receive(
            {
                "collection": "friend_requests",
                "event_type": "UPDATE",
                "row": {"id": 1, "from_user": "alice", "to_user": "bob"},
                "origin": "another-instance",
            }
        )

        assert delivered == 1
        assert events[0].event_type == "UPDATE"

    @pytest.mark.asyncio
    async def test_receive_ignores_invalid_payload(self, notifier):
        assert await notifier.receive({"collection": "posts", "origin": "x"}) == 0
        assert await notifier.receive({"origin": "x"}) == 0

    @pytest.mark.asyncio
    async def test_consumer_hands_message_to_notifier(self):
        notifier = MagicMock()
        notifier.instance_id = "abc"
        notifier.receive = AsyncMock(return_value=1)
        consumer = KafkaConsumerManager(notifier)
        payload = {"collection": "follows", "event_type": "INSERT", "row": {}, "origin": "x"}

        await consumer._process_message(SimpleNamespace(topic="relations.changes", value=payload))

        notifier.receive.assert_awaited_once_with(payload)

    @pytest.mark.asyncio
    async def test_consumer_drops_non_object_payload(self):
        notifier = MagicMock()
        notifier.receive = AsyncMock()
        consumer = KafkaConsumerManager(notifier)

        await consumer._process_message(SimpleNamespace(topic="relations.changes", value=[1, 2]))

        notifier.receive.assert_not_awaited()


class TestWebSocketRelay:

    @pytest.mark.asyncio
    async def test_connection_receives_invalidations(self, notifier):
        manager = ConnectionManager(notifier)
        websocket = MagicMock()
        websocket.send_json = AsyncMock()

        connection_id = await manager.connect("bob", websocket)
        await notifier.dispatch(request_change(to_user="bob"))

        websocket.send_json.assert_awaited_once_with(
            {
                "event": "invalidate",
                "collection": "friend_requests",
                "type": "UPSERT",
                "filter": "to_user=eq.bob",
            }
        )
        assert manager.get_online_ids() == ["bob"]

        manager.disconnect(connection_id)
        assert notifier.subscription_count == 0
        assert manager.get_online_ids() == []

    @pytest.mark.asyncio
    async def test_broken_socket_is_dropped(self, notifier):
        manager = ConnectionManager(notifier)
        websocket = MagicMock()
        websocket.send_json = AsyncMock(side_effect=RuntimeError("closed"))

        await manager.connect("bob", websocket)
        await notifier.dispatch(
            RowChange(Collection.FOLLOWS, "INSERT", {"follower_id": "alice", "following_id": "bob"})
        )

        assert manager.get_online_ids() == []
        assert notifier.subscription_count == 0
