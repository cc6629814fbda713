import asyncio
import unittest

from tvwatch.codec import DecodeError
from tvwatch.config import WatcherConfig
from tvwatch.connection import ConnectionClosedError, TransportError
from tvwatch.coordinator import WatchSetCoordinator
from tvwatch.directory import DirectoryError
from tvwatch.types import Finish, OutboundEnvelope, SessionEvent, StateUpdate, WatchSetUpdated

from .fakes import FakeConnection, FakeDirectory, fen_frame, finish_frame, wait_until


class CoordinatorTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.run_task = None

    async def asyncTearDown(self):
        if self.run_task is not None:
            self.run_task.cancel()
            await asyncio.gather(self.run_task, return_exceptions=True)
        await self.coordinator.aclose()

    def _make(self, live=(), replacements=(), connector=None, **overrides):
        options = {"replacement_delay_s": 0.1, "keepalive_interval_s": 3600.0}
        options.update(overrides)
        self.connection = FakeConnection()
        self.directory = FakeDirectory(live, replacements)
        self.coordinator = WatchSetCoordinator(
            self.connection, self.directory, config=WatcherConfig(**options), connector=connector
        )
        self.publisher = self.coordinator.publisher
        return self.coordinator

    def _drain(self):
        events = []
        while self.publisher.qsize():
            events.append(self.publisher.get_nowait())
        return events

    async def _watch_initial(self, ids):
        self.directory.live = list(ids)
        await self.coordinator.start_watching_current_games()
        self.connection.sent.clear()
        self.connection.raw_sent.clear()
        self._drain()

    def _start_loop(self):
        self.run_task = asyncio.create_task(self.coordinator.run())


class WatchSetOperationTests(CoordinatorTestCase):
    async def test_current_games_use_one_combined_subscribe(self):
        self._make(live=["a1", "b2", "c3"])

        await self.coordinator.start_watching_current_games()

        self.assertEqual(self.connection.sent, [OutboundEnvelope(t="startWatching", d="a1 b2 c3 ")])
        self.assertEqual(self.coordinator.watched_games, ["a1", "b2", "c3"])
        self.assertEqual(self._drain(), [WatchSetUpdated(games=("a1", "b2", "c3"))])
        self.assertEqual(self.directory.live_calls, [("best", 30)])

    async def test_empty_directory_sends_nothing_but_publishes(self):
        self._make(live=[])

        await self.coordinator.start_watching_current_games()

        self.assertEqual(self.connection.sent, [])
        self.assertEqual(self.coordinator.watched_games, [])
        self.assertEqual(self._drain(), [WatchSetUpdated(games=())])

    async def test_start_watching_one_appends_and_publishes(self):
        self._make()
        await self._watch_initial(["a1"])

        await self.coordinator.start_watching_one("b2")

        self.assertEqual(self.connection.sent, [OutboundEnvelope(t="startWatching", d="b2")])
        self.assertEqual(self.coordinator.watched_games, ["a1", "b2"])
        self.assertEqual(self._drain(), [WatchSetUpdated(games=("a1", "b2"))])

    async def test_replacement_keeps_length_and_position(self):
        self._make()
        await self._watch_initial(["a1", "b2", "c3", "d4"])

        await self.coordinator.start_watching_one_instead("x9", "c3")

        self.assertEqual(self.coordinator.watched_games, ["a1", "b2", "x9", "d4"])
        self.assertEqual(self.connection.sent, [OutboundEnvelope(t="startWatching", d="x9")])
        self.assertEqual(self._drain(), [WatchSetUpdated(games=("a1", "b2", "x9", "d4"))])

    async def test_replacement_only_touches_first_match(self):
        self._make()
        await self._watch_initial(["a1", "b2"])
        await self.coordinator.start_watching_one("a1")
        self._drain()

        await self.coordinator.start_watching_one_instead("x9", "a1")

        self.assertEqual(self.coordinator.watched_games, ["x9", "b2", "a1"])

    async def test_missing_replacement_target_still_publishes(self):
        self._make()
        await self._watch_initial(["a1", "b2"])

        await self.coordinator.start_watching_one_instead("x9", "zz")

        self.assertEqual(self.coordinator.watched_games, ["a1", "b2"])
        self.assertEqual(self.connection.sent, [])
        self.assertEqual(self._drain(), [WatchSetUpdated(games=("a1", "b2"))])

    async def test_published_snapshot_is_a_copy(self):
        self._make()
        await self._watch_initial(["a1", "b2"])

        await self.coordinator.start_watching_one("c3")
        snapshot = self._drain()[0]
        await self.coordinator.start_watching_one_instead("x9", "a1")

        self.assertEqual(snapshot.games, ("a1", "b2", "c3"))

    async def test_pump_fetches_until_target(self):
        self._make(replacements=["c3", "d4", "e5"])
        await self._watch_initial(["a1", "b2"])

        await self.coordinator.pump_replacements_until_count(5)

        self.assertEqual(self.coordinator.watched_games, ["a1", "b2", "c3", "d4", "e5"])
        self.assertEqual(
            self.directory.replacement_calls,
            [
                ("best", "a1", ["a1", "b2"]),
                ("best", "a1", ["a1", "b2", "c3"]),
                ("best", "a1", ["a1", "b2", "c3", "d4"]),
            ],
        )
        self.assertEqual([envelope.d for envelope in self.connection.sent], ["c3", "d4", "e5"])

    async def test_pump_at_target_fetches_nothing(self):
        self._make(replacements=["c3"])
        await self._watch_initial(["a1", "b2"])

        await self.coordinator.pump_replacements_until_count(2)

        self.assertEqual(self.directory.replacement_calls, [])
        self.assertEqual(self.coordinator.watched_games, ["a1", "b2"])

    async def test_pump_requires_a_watched_game(self):
        self._make(replacements=["c3"])

        with self.assertRaises(ValueError):
            await self.coordinator.pump_replacements_until_count(3)

    async def test_pump_propagates_directory_failure(self):
        self._make(replacements=[DirectoryError("down")])
        await self._watch_initial(["a1"])

        with self.assertRaises(DirectoryError):
            await self.coordinator.pump_replacements_until_count(3)


class EventLoopTests(CoordinatorTestCase):
    async def test_heartbeats_are_not_published(self):
        self._make()
        self.connection.feed("0", "0", fen_frame("a1"), ConnectionClosedError("gone"))

        with self.assertRaises(ConnectionClosedError):
            await self.coordinator.run()

        events = self._drain()
        self.assertEqual(len(events), 1)
        self.assertIsInstance(events[0], SessionEvent)
        self.assertIsInstance(events[0].event, StateUpdate)
        self.assertEqual(events[0].event.id, "a1")

    async def test_unknown_frame_is_fatal(self):
        self._make()
        self.connection.feed('{"t": "crowd", "d": {"nb": 3}}')

        with self.assertRaises(DecodeError):
            await self.coordinator.run()

    async def test_keepalive_sent_when_idle(self):
        self._make(keepalive_interval_s=0.05)
        self._start_loop()

        await wait_until(lambda: self.connection.raw_sent.count("null") >= 2)

        self.assertEqual(set(self.connection.raw_sent), {"null"})
        self.assertFalse(self.run_task.done())

    async def test_finish_replaces_after_cooldown(self):
        self._make(replacements=["d4"], replacement_delay_s=0.3)
        await self._watch_initial(["a1", "b2", "c3"])
        self.connection.feed(finish_frame("b2"))
        self._start_loop()

        first = await asyncio.wait_for(self.publisher.get(), 1)
        self.assertEqual(first, SessionEvent(event=Finish(id="b2", result="w")))

        await asyncio.sleep(0.1)
        self.assertEqual(self.directory.replacement_calls, [])
        self.assertEqual(self.coordinator.watched_games, ["a1", "b2", "c3"])

        update = await asyncio.wait_for(self.publisher.get(), 2)
        self.assertEqual(update, WatchSetUpdated(games=("a1", "d4", "c3")))
        self.assertEqual(self.directory.replacement_calls, [("best", "b2", ["a1", "b2", "c3"])])
        self.assertEqual(self.connection.sent, [OutboundEnvelope(t="startWatching", d="d4")])

        await asyncio.sleep(0.4)
        self.assertEqual(self.publisher.qsize(), 0)
        self.assertEqual(len(self.directory.replacement_calls), 1)

    async def test_failed_replacement_is_retried(self):
        self._make(replacements=[DirectoryError("busy"), "d4"], replacement_delay_s=0.05)
        await self._watch_initial(["a1", "b2", "c3"])
        self.connection.feed(finish_frame("b2"))
        self._start_loop()

        await wait_until(lambda: self.coordinator.watched_games == ["a1", "d4", "c3"])

        self.assertEqual(len(self.directory.replacement_calls), 2)

    async def test_replacement_gives_up_without_stopping_the_loop(self):
        self._make(
            replacements=[DirectoryError("busy"), DirectoryError("busy")],
            replacement_delay_s=0.05,
            max_replacement_attempts=2,
        )
        await self._watch_initial(["a1", "b2"])
        self.connection.feed(finish_frame("b2", win=None))
        self._start_loop()

        await wait_until(lambda: len(self.directory.replacement_calls) == 2)
        await asyncio.sleep(0.2)

        self.assertEqual(len(self.directory.replacement_calls), 2)
        self.assertEqual(self.coordinator.watched_games, ["a1", "b2"])
        self.assertEqual(self.coordinator.scheduler.pending, 0)
        self.assertFalse(self.run_task.done())

        self._drain()
        self.connection.feed(fen_frame("a1"))
        event = await asyncio.wait_for(self.publisher.get(), 1)
        self.assertEqual(event.event.id, "a1")

    async def test_aclose_cancels_pending_replacements(self):
        self._make(replacement_delay_s=10)
        self.coordinator.scheduler.schedule("a1")
        self.assertEqual(self.coordinator.scheduler.pending, 1)

        await self.coordinator.aclose()

        self.assertEqual(self.coordinator.scheduler.pending, 0)
        self.assertTrue(self.connection.closed)
        self.assertTrue(self.coordinator.commands.empty())


class ReconnectTests(CoordinatorTestCase):
    async def test_run_forever_without_reconnect_raises(self):
        self._make()
        self.connection.feed(ConnectionClosedError("gone"))

        with self.assertRaises(ConnectionClosedError):
            await self.coordinator.run_forever()

    async def test_reconnect_resubscribes_watch_set(self):
        second = FakeConnection()

        async def connector():
            return second

        self._make(connector=connector, reconnect=True, reconnect_initial_delay_s=0.01)
        first = self.connection
        await self._watch_initial(["a1", "b2"])
        first.feed(ConnectionClosedError("gone"))

        self.run_task = asyncio.create_task(self.coordinator.run_forever())
        await wait_until(lambda: bool(second.sent))

        self.assertTrue(first.closed)
        self.assertEqual(second.sent, [OutboundEnvelope(t="startWatching", d="a1 b2 ")])
        self.assertEqual(self.coordinator.watched_games, ["a1", "b2"])

        second.feed(fen_frame("b2"))
        event = await asyncio.wait_for(self.publisher.get(), 1)
        self.assertEqual(event.event.id, "b2")

    async def test_resubscribe_on_dead_connection_is_retried(self):
        dead = FakeConnection()
        dead.closed = True
        healthy = FakeConnection()
        connections = [dead, healthy]

        async def connector():
            return connections.pop(0)

        self._make(connector=connector, reconnect=True, reconnect_initial_delay_s=0.01)
        await self._watch_initial(["a1", "b2"])
        self.connection.feed(ConnectionClosedError("gone"))

        self.run_task = asyncio.create_task(self.coordinator.run_forever())
        await wait_until(lambda: bool(healthy.sent))

        self.assertFalse(self.run_task.done())
        self.assertEqual(connections, [])
        self.assertEqual(dead.sent, [])
        self.assertEqual(healthy.sent, [OutboundEnvelope(t="startWatching", d="a1 b2 ")])

        healthy.feed(fen_frame("a1"))
        event = await asyncio.wait_for(self.publisher.get(), 1)
        self.assertEqual(event.event.id, "a1")

    async def test_replacement_interrupted_by_disconnect_completes_after_reconnect(self):
        second = FakeConnection()

        async def connector():
            return second

        self._make(
            replacements=["d4", "d4"],
            connector=connector,
            reconnect=True,
            reconnect_initial_delay_s=0.01,
            replacement_delay_s=0.05,
        )
        first = self.connection
        await self._watch_initial(["a1", "b2", "c3"])
        first.feed(finish_frame("b2"))
        first.closed = True

        self.run_task = asyncio.create_task(self.coordinator.run_forever())
        await wait_until(lambda: self.coordinator.watched_games == ["a1", "d4", "c3"])

        self.assertEqual(first.sent, [])
        self.assertEqual(
            second.sent,
            [
                OutboundEnvelope(t="startWatching", d="a1 b2 c3 "),
                OutboundEnvelope(t="startWatching", d="d4"),
            ],
        )
        self.assertEqual(
            self.directory.replacement_calls,
            [("best", "b2", ["a1", "b2", "c3"]), ("best", "b2", ["a1", "b2", "c3"])],
        )
        self.assertFalse(self.run_task.done())

    async def test_reconnect_gives_up_after_max_attempts(self):
        attempts = []

        async def connector():
            attempts.append(1)
            raise TransportError("refused")

        self._make(
            connector=connector,
            reconnect=True,
            reconnect_initial_delay_s=0.01,
            reconnect_max_attempts=2,
        )
        self.connection.feed(ConnectionClosedError("gone"))

        with self.assertRaises(TransportError):
            await self.coordinator.run_forever()
        self.assertEqual(len(attempts), 2)

    async def test_decode_errors_are_not_retried(self):
        async def connector():
            raise AssertionError("should not reconnect")

        self._make(connector=connector, reconnect=True, reconnect_initial_delay_s=0.01)
        self.connection.feed("garbage")

        with self.assertRaises(DecodeError):
            await self.coordinator.run_forever()


if __name__ == "__main__":
    unittest.main()
