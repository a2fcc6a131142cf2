import asyncio
import unittest
from datetime import datetime, timezone

from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from chatrelay.errors import SubscriptionFailed
from chatrelay.lifecycle import Credentials
from chatrelay.realtime import RealtimeChangeFeed, RealtimeClient, RealtimePeerBroadcast
from chatrelay.reconciler import ChannelSource, Reconciler
from chatrelay.store import InMemoryStore

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
WS_PATH = "/realtime/v1/websocket"


class FakeRealtimeServer:
    """Phoenix-style channel server: acks joins, echoes broadcasts, records frames."""

    def __init__(self, *, reject_topics=(), silent_topics=()):
        self.frames = []
        self.sockets = []
        self.params = []
        self.reject_topics = set(reject_topics)
        self.silent_topics = set(silent_topics)

    def app(self):
        app = web.Application()
        app.router.add_get(WS_PATH, self.handle)
        return app

    def events(self, event):
        return [frame for frame in self.frames if frame.get("event") == event]

    async def handle(self, request):
        self.params.append(dict(request.query))
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = msg.json()
            self.frames.append(frame)
            topic = frame.get("topic")
            if frame.get("event") == "phx_join":
                if topic in self.silent_topics:
                    continue
                status = "error" if topic in self.reject_topics else "ok"
                await ws.send_json(
                    {
                        "topic": topic,
                        "event": "phx_reply",
                        "payload": {"status": status, "response": {}},
                        "ref": frame.get("ref"),
                    }
                )
            elif frame.get("event") == "broadcast":
                await ws.send_json({"topic": topic, "event": "broadcast", "payload": frame["payload"], "ref": None})
        return ws

    async def push(self, topic, event, payload):
        for ws in self.sockets:
            if not ws.closed:
                await ws.send_json({"topic": topic, "event": event, "payload": payload, "ref": None})


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def insert_payload(record, change_type="INSERT"):
    return {"data": {"type": change_type, "schema": "public", "table": "messages", "record": record}}


class RealtimeTestBase(unittest.IsolatedAsyncioTestCase):
    server_options = {}

    async def asyncSetUp(self):
        self.fake = FakeRealtimeServer(**self.server_options)
        self.server = TestServer(self.fake.app())
        await self.server.start_server()
        self.addAsyncCleanup(self.server.close)

    def make_client(self, **kwargs):
        kwargs.setdefault("heartbeat_interval_s", 3600.0)
        client = RealtimeClient(
            str(self.server.make_url(WS_PATH)),
            Credentials(api_key="anon", access_token="user-token"),
            **kwargs,
        )
        self.addAsyncCleanup(client.close)
        return client


class TestRealtimeChangeFeed(RealtimeTestBase):
    async def test_join_carries_filter_and_delivers_inserts(self):
        client = self.make_client()
        received = []

        channel = await RealtimeChangeFeed(client).subscribe("c1", received.append)

        join = self.fake.events("phx_join")[0]
        self.assertEqual(join["topic"], "realtime:messages:c1")
        self.assertEqual(join["payload"]["access_token"], "user-token")
        change = join["payload"]["config"]["postgres_changes"][0]
        self.assertEqual((change["event"], change["filter"]), ("INSERT", "conversation_id=eq.c1"))
        self.assertEqual(self.fake.params[0]["apikey"], "anon")
        self.assertEqual(client.topics(), ["realtime:messages:c1"])

        await self.fake.push("realtime:messages:c1", "postgres_changes", insert_payload({"id": 1}, "UPDATE"))
        await self.fake.push("realtime:messages:c1", "postgres_changes", insert_payload({"id": 2}))
        await wait_until(lambda: received)
        self.assertEqual(received, [{"id": 2}])

        await channel.unsubscribe()
        await wait_until(lambda: self.fake.events("phx_leave"))
        self.assertEqual(client.topics(), [])

    async def test_events_for_other_topics_are_ignored(self):
        client = self.make_client()
        received = []
        await RealtimeChangeFeed(client).subscribe("c1", received.append)

        await self.fake.push("realtime:messages:c2", "postgres_changes", insert_payload({"id": 5}))
        await self.fake.push("realtime:messages:c1", "postgres_changes", insert_payload({"id": 6}))
        await wait_until(lambda: received)

        self.assertEqual(received, [{"id": 6}])


class TestRealtimePeerBroadcast(RealtimeTestBase):
    async def test_publish_is_echoed_to_sender(self):
        client = self.make_client()
        broadcast = RealtimePeerBroadcast(client)
        received = []
        await broadcast.subscribe("c1", received.append)

        await broadcast.publish("c1", {"message": {"id": "m1"}})
        await wait_until(lambda: received)

        self.assertEqual(received, [{"message": {"id": "m1"}}])
        sent = self.fake.events("broadcast")[0]
        self.assertEqual(sent["topic"], "realtime:broadcast:messages:c1")
        self.assertEqual(sent["payload"]["event"], "message")

    async def test_publish_requires_joined_topic(self):
        client = self.make_client()
        await client.connect()

        with self.assertRaises(SubscriptionFailed):
            await RealtimePeerBroadcast(client).publish("c1", {"message": {}})


class TestRealtimeFailures(RealtimeTestBase):
    server_options = {"reject_topics": {"realtime:messages:c1"}, "silent_topics": {"realtime:messages:c9"}}

    async def test_rejected_join_raises(self):
        client = self.make_client()

        with self.assertRaises(SubscriptionFailed):
            await RealtimeChangeFeed(client).subscribe("c1", lambda row: None)
        self.assertEqual(client.topics(), [])

    async def test_unanswered_join_times_out(self):
        client = self.make_client(join_timeout_s=0.1)

        with self.assertRaises(SubscriptionFailed):
            await RealtimeChangeFeed(client).subscribe("c9", lambda row: None)

    async def test_unreachable_server_raises(self):
        client = RealtimeClient("http://127.0.0.1:1" + WS_PATH, Credentials(api_key="anon"))
        self.addAsyncCleanup(client.close)

        with self.assertRaises(SubscriptionFailed):
            await client.connect()

    async def test_reconciler_degrades_to_broadcast_when_feed_join_rejected(self):
        client = self.make_client()
        reconciler = Reconciler(
            InMemoryStore(now_func=lambda: T0),
            "c1",
            change_feed=RealtimeChangeFeed(client),
            broadcast=RealtimePeerBroadcast(client),
            poll_interval_s=3600.0,
            now_func=lambda: T0,
        )
        self.addAsyncCleanup(reconciler.close)
        arrivals = []
        reconciler.add_listener(lambda message, source: arrivals.append(source))

        await reconciler.open()
        message = await reconciler.send("hi", "u_self")
        await wait_until(lambda: self.fake.events("broadcast"))
        await asyncio.sleep(0.05)

        self.assertEqual(reconciler.active_channels, ["broadcast"])
        self.assertEqual(reconciler.timeline.ids(), [message.id])
        self.assertEqual(arrivals, [ChannelSource.SELF])


class TestRealtimeHeartbeat(RealtimeTestBase):
    async def test_heartbeat_frames_are_sent(self):
        client = self.make_client(heartbeat_interval_s=0.05)
        await client.connect()

        await wait_until(lambda: self.fake.events("heartbeat"))

        self.assertEqual(self.fake.events("heartbeat")[0]["topic"], "phoenix")
        self.assertTrue(client.connected)


if __name__ == "__main__":
    unittest.main()
