"""Tests for the status fan-out engine and push dispatchers."""

import json
import threading
import time

import httpx
import pytest

from socialgate.service.errors import ServerError, ServiceUnavailableError
from socialgate.service.fanout import (
    Delivery,
    FanoutReport,
    HttpPushDispatcher,
    LocalPushDispatcher,
    StatusFanout,
)
from socialgate.service.friends import Friend, FriendList, decode

TEST_TABLE = "DataTable"

TREVOR = Friend("USA", "Kitzmiller,Trevor")
TEGAN = Friend("Canada", "Quin,Tegan")
GHOST = Friend("UK", "Nobody")


@pytest.fixture
def seeded(store):
    store.put_entity(TEST_TABLE, TREVOR.country, TREVOR.name, {"Updates": "old\n"})
    store.put_entity(TEST_TABLE, TEGAN.country, TEGAN.name, {})
    return store


class TestDeliverOne:
    def test_appends_to_updates(self, seeded):
        fanout = StatusFanout(seeded, table=TEST_TABLE)
        assert fanout.deliver_one(TREVOR, "Hi") is Delivery.DELIVERED
        record = seeded.get_entity(TEST_TABLE, TREVOR.country, TREVOR.name)
        assert record.properties["Updates"] == "old\nHi\n"

    def test_missing_updates_property_starts_log(self, seeded):
        StatusFanout(seeded, table=TEST_TABLE).deliver_one(TEGAN, "Hi")
        record = seeded.get_entity(TEST_TABLE, TEGAN.country, TEGAN.name)
        assert record.properties["Updates"] == "Hi\n"

    def test_missing_profile_is_skipped(self, seeded):
        assert StatusFanout(seeded, table=TEST_TABLE).deliver_one(GHOST, "Hi") is Delivery.SKIPPED

    def test_persistent_conflict_fails(self, seeded):
        original = seeded.merge_entity

        def racing_merge(table, partition, row, properties, *, if_match=None):
            original(table, partition, row, {"Status": "bump"})
            return original(table, partition, row, properties, if_match=if_match)

        seeded.merge_entity = racing_merge
        fanout = StatusFanout(seeded, table=TEST_TABLE, max_retries=3)
        assert fanout.deliver_one(TREVOR, "Hi") is Delivery.FAILED


class TestFanOut:
    async def test_failure_isolation(self, seeded):
        original = seeded.get_entity

        def get_entity(table, partition, row):
            if row == TEGAN.name:
                raise RuntimeError("profile store timeout")
            return original(table, partition, row)

        seeded.get_entity = get_entity
        fanout = StatusFanout(seeded, table=TEST_TABLE)
        report = await fanout.fan_out("Hello", [TEGAN, GHOST, TREVOR])

        assert report.delivered == [TREVOR]
        assert report.skipped == [GHOST]
        assert report.failed == [TEGAN]
        assert report.attempted == 3
        trevor = seeded.get_entity(TEST_TABLE, TREVOR.country, TREVOR.name)
        assert trevor.properties["Updates"].endswith("Hello\n")

    async def test_empty_friend_list(self, seeded):
        report = await StatusFanout(seeded, table=TEST_TABLE).fan_out("Hi", FriendList())
        assert report.attempted == 0

    async def test_deadline_marks_slow_friends_timed_out(self, seeded):
        original = seeded.get_entity

        def slow_get_entity(table, partition, row):
            if row == TEGAN.name:
                time.sleep(0.5)
            return original(table, partition, row)

        seeded.get_entity = slow_get_entity
        fanout = StatusFanout(seeded, table=TEST_TABLE, deadline_seconds=0.1)
        report = await fanout.fan_out("Hi", [TREVOR, TEGAN])
        assert report.delivered == [TREVOR]
        assert report.timed_out == [TEGAN]

    async def test_concurrency_is_bounded(self, seeded):
        friends = []
        for i in range(6):
            friend = Friend("USA", f"Friend,{i}")
            seeded.put_entity(TEST_TABLE, friend.country, friend.name, {})
            friends.append(friend)

        lock = threading.Lock()
        state = {"current": 0, "peak": 0}
        original = seeded.get_entity

        def tracking_get_entity(table, partition, row):
            with lock:
                state["current"] += 1
                state["peak"] = max(state["peak"], state["current"])
            time.sleep(0.05)
            with lock:
                state["current"] -= 1
            return original(table, partition, row)

        seeded.get_entity = tracking_get_entity
        fanout = StatusFanout(seeded, table=TEST_TABLE, max_concurrency=2)
        report = await fanout.fan_out("Hi", friends)
        assert len(report.delivered) == 6
        assert state["peak"] <= 2

    async def test_local_dispatcher(self, seeded):
        dispatcher = LocalPushDispatcher(StatusFanout(seeded, table=TEST_TABLE))
        report = await dispatcher.dispatch(Friend("USA", "Franklin,Aretha"), "Hi", decode("USA;Kitzmiller,Trevor"))
        assert report.delivered == [TREVOR]


class TestFanoutReport:
    def test_dict_round_trip(self):
        report = FanoutReport(status="Hi", delivered=[TREVOR], skipped=[GHOST])
        data = report.to_dict()
        assert data["attempted"] == 2
        assert FanoutReport.from_dict(data) == report


class TestHttpPushDispatcher:
    async def test_posts_friends_and_parses_report(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            report = FanoutReport(status="Hi there", delivered=[TREVOR]).to_dict()
            return httpx.Response(200, json={"status": "ok", "data": report})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = HttpPushDispatcher("http://push.local/", client=client)
        report = await dispatcher.dispatch(
            Friend("USA", "Franklin,Aretha"), "Hi there", decode("USA;Kitzmiller,Trevor")
        )
        await dispatcher.close()

        assert seen["path"] == "/v1/push/PushStatus/USA/Franklin,Aretha/Hi there"
        assert seen["body"] == {"Friends": "USA;Kitzmiller,Trevor"}
        assert report.delivered == [TREVOR]

    async def test_transport_error_is_service_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = HttpPushDispatcher("http://push.local", client=client)
        with pytest.raises(ServiceUnavailableError):
            await dispatcher.dispatch(Friend("USA", "A"), "Hi", FriendList())
        await dispatcher.close()

    async def test_server_error_is_service_unavailable(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(502))
        )
        dispatcher = HttpPushDispatcher("http://push.local", client=client)
        with pytest.raises(ServiceUnavailableError):
            await dispatcher.dispatch(Friend("USA", "A"), "Hi", FriendList())
        await dispatcher.close()

    async def test_client_error_is_server_error(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(400))
        )
        dispatcher = HttpPushDispatcher("http://push.local", client=client)
        with pytest.raises(ServerError):
            await dispatcher.dispatch(Friend("USA", "A"), "Hi", FriendList())
        await dispatcher.close()
