"""Tests for drop correlation, dedup and event posting."""

import queue
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from iptables_tailer.errors import InvalidTargetError
from iptables_tailer.metrics import DropMetrics
from iptables_tailer.poster import Poster, TrafficDirection, build_message
from iptables_tailer.retry import ExponentialBackoff
from iptables_tailer.stats import PipelineStats

from conftest import NOW, FakeLocator, FakeResolver, RecordingSink


@pytest.fixture()
def metrics():
    return DropMetrics()


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def make_poster(config, clock, timer, metrics, sink):
    def _make(locator=None, resolver=None, sink=sink, config=config, stats=None):
        backoff = ExponentialBackoff(0.05, max_elapsed=1.0, clock=timer.monotonic)
        return Poster(locator or FakeLocator(), sink, metrics, config,
                      resolver=resolver or FakeResolver(), clock=clock,
                      sleep=timer.sleep, stats=stats, backoff=backoff)
    return _make


class TestBuildMessage:
    def test_send_message(self, make_drop):
        msg = build_message(make_drop(), "shop", "db", TrafficDirection.SEND)
        assert msg == "Packet dropped when sending traffic from 1.1.1.1 to db (2.2.2.2) on port 2/TCP"

    def test_receive_message(self, make_drop):
        msg = build_message(make_drop(), "web", "db", TrafficDirection.RECEIVE)
        assert msg == "Packet dropped when receiving traffic from web (1.1.1.1) to 2.2.2.2 on port 2/TCP"

    def test_unnamed_side_shows_ip_once(self, make_drop):
        msg = build_message(make_drop(), "1.1.1.1", "2.2.2.2", TrafficDirection.SEND)
        assert msg == "Packet dropped when sending traffic from 1.1.1.1 to 2.2.2.2 on port 2/TCP"


class TestShouldIgnore:
    def test_fresh_drop_is_handled(self, make_poster, make_drop):
        assert not make_poster().should_ignore(make_drop())

    def test_expired_drop_is_ignored(self, make_poster, make_drop, config):
        drop = make_drop(log_time=NOW - config.expiration - timedelta(seconds=1))
        assert make_poster().should_ignore(drop)

    def test_repeat_within_interval_is_ignored(self, make_poster, make_drop):
        poster = make_poster()
        poster.handle(make_drop())
        assert poster.should_ignore(make_drop(log_time=NOW + timedelta(minutes=2)))

    def test_repeat_after_interval_is_handled(self, make_poster, make_drop):
        poster = make_poster()
        poster.handle(make_drop())
        assert not poster.should_ignore(make_drop(log_time=NOW + timedelta(minutes=2, seconds=1)))

    def test_other_pair_is_not_a_repeat(self, make_poster, make_drop):
        poster = make_poster()
        poster.handle(make_drop())
        assert not poster.should_ignore(make_drop(dst_ip="3.3.3.3"))


class TestHandle:
    def test_sender_pod_gets_send_event(self, make_poster, make_drop, make_pod, sink, metrics):
        src = make_pod(name="web-0", namespace="shop", ip="1.1.1.1")
        poster = make_poster(locator=FakeLocator({"1.1.1.1": src}))

        poster.handle(make_drop())

        assert len(sink.submitted) == 1
        note = sink.submitted[0]
        assert note.target == src
        assert note.event_type == "Warning"
        assert note.reason == "PacketDrop"
        assert note.message == "Packet dropped when sending traffic from 1.1.1.1 to 2.2.2.2 on port 2/TCP"
        assert metrics.get_count("shop", "2.2.2.2") == 1

    def test_both_pods_get_events(self, make_poster, make_drop, make_pod, sink):
        src = make_pod(name="web-0", namespace="shop", ip="1.1.1.1")
        dst = make_pod(name="db-0", namespace="data", ip="2.2.2.2")
        poster = make_poster(locator=FakeLocator({"1.1.1.1": src, "2.2.2.2": dst}))

        poster.handle(make_drop())

        assert [n.target for n in sink.submitted] == [src, dst]
        assert "to data (2.2.2.2)" in sink.submitted[0].message
        assert "from shop (1.1.1.1)" in sink.submitted[1].message

    def test_host_network_pods_get_no_events(self, make_poster, make_drop, make_pod, sink, metrics):
        src = make_pod(ip="1.1.1.1", host_network=True, node_name="node-a")
        poster = make_poster(locator=FakeLocator({"1.1.1.1": src}))

        poster.handle(make_drop())

        assert sink.submitted == []
        assert metrics.get_count("node-a", "2.2.2.2") == 1

    def test_unknown_endpoints_only_count_metric(self, make_poster, make_drop, sink, metrics):
        resolver = FakeResolver({"2.2.2.2": ["db.example.com"]})
        poster = make_poster(resolver=resolver)

        poster.handle(make_drop())

        assert sink.submitted == []
        assert metrics.get_count("1.1.1.1", "db.example.com") == 1
        assert (("1.1.1.1", "2.2.2.2") in poster.event_submit_times)

    def test_ignored_drop_changes_nothing(self, make_poster, make_drop, metrics):
        stats = PipelineStats()
        poster = make_poster(stats=stats)
        poster.handle(make_drop(log_time=NOW - timedelta(hours=1)))
        assert metrics.get_count("1.1.1.1", "2.2.2.2") == 0
        assert poster.event_submit_times == {}
        assert stats.snapshot()["drops_ignored"] == 1


class TestDedup:
    def test_repeats_are_suppressed_per_interval(self, make_poster, make_drop, make_pod, clock, sink):
        src = make_pod(ip="1.1.1.1")
        poster = make_poster(locator=FakeLocator({"1.1.1.1": src}))

        for minutes in (0, 1, 3):
            clock.now = NOW + timedelta(minutes=minutes)
            poster.process(make_drop(log_time=clock.now))

        assert len(sink.submitted) == 2

    def test_eviction_prunes_old_pairs(self, make_poster, make_drop, clock, config):
        poster = make_poster(config=replace(config, dedup_eviction_multiplier=2))

        poster.handle(make_drop(dst_ip="3.3.3.3"))
        clock.advance(minutes=5)
        poster.handle(make_drop(log_time=clock.now))

        assert list(poster.event_submit_times) == [("1.1.1.1", "2.2.2.2")]

    def test_without_eviction_pairs_are_kept(self, make_poster, make_drop, clock):
        poster = make_poster()
        poster.handle(make_drop(dst_ip="3.3.3.3"))
        clock.advance(minutes=60)
        poster.handle(make_drop(log_time=clock.now))
        assert len(poster.event_submit_times) == 2


class TestProcess:
    def test_retries_until_lookup_succeeds(self, make_poster, make_drop, make_pod, timer, sink):
        locator = FakeLocator({"1.1.1.1": make_pod(ip="1.1.1.1")}, failures=2)
        poster = make_poster(locator=locator)

        assert poster.process(make_drop())
        assert timer.sleeps == pytest.approx([0.05, 0.1])
        assert len(sink.submitted) == 1

    def test_gives_up_after_max_elapsed(self, make_poster, make_drop, timer, metrics):
        stats = PipelineStats()
        poster = make_poster(locator=FakeLocator(failures=1000), stats=stats)

        assert not poster.process(make_drop())
        assert timer.sleeps == pytest.approx([0.05, 0.1, 0.2, 0.4, 0.8])
        assert metrics.get_count("1.1.1.1", "2.2.2.2") == 0
        assert stats.snapshot()["drops_abandoned"] == 1

    def test_permanent_error_is_not_retried(self, make_poster, make_drop, make_pod, timer, metrics):
        sink = RecordingSink(error=InvalidTargetError("bad target"))
        poster = make_poster(locator=FakeLocator({"1.1.1.1": make_pod(ip="1.1.1.1")}), sink=sink)

        assert poster.process(make_drop())
        assert timer.sleeps == []
        assert metrics.get_count("shop", "2.2.2.2") == 1
        assert ("1.1.1.1", "2.2.2.2") in poster.event_submit_times

    def test_rejected_sender_does_not_block_receiver(self, make_poster, make_drop, make_pod,
                                                     timer, metrics):
        src = make_pod(name="web-0", namespace="shop", ip="1.1.1.1")
        dst = make_pod(name="db-0", namespace="data", ip="2.2.2.2")
        sink = RecordingSink(rejected={"web-0"})
        stats = PipelineStats()
        poster = make_poster(locator=FakeLocator({"1.1.1.1": src, "2.2.2.2": dst}),
                             sink=sink, stats=stats)

        assert poster.process(make_drop())

        assert [n.target for n in sink.submitted] == [dst]
        assert timer.sleeps == []
        assert metrics.get_count("shop", "data") == 1
        snap = stats.snapshot()
        assert (snap["events_rejected"], snap["events_submitted"], snap["drops_abandoned"]) == (1, 1, 0)

    def test_rejected_pair_is_deduplicated(self, make_poster, make_drop, make_pod, clock, metrics):
        src = make_pod(name="web-0", namespace="shop", ip="1.1.1.1")
        poster = make_poster(locator=FakeLocator({"1.1.1.1": src}),
                             sink=RecordingSink(rejected={"web-0"}))

        poster.process(make_drop())
        clock.advance(minutes=1)
        poster.process(make_drop(log_time=clock.now))

        assert metrics.get_count("shop", "2.2.2.2") == 1

    def test_transient_error_after_rejection_retries_whole_drop(self, make_poster, make_drop,
                                                                 make_pod, timer):
        src = make_pod(name="web-0", namespace="shop", ip="1.1.1.1")
        dst = make_pod(name="db-0", namespace="data", ip="2.2.2.2")
        sink = RecordingSink(failures=1, rejected={"web-0"})
        poster = make_poster(locator=FakeLocator({"1.1.1.1": src, "2.2.2.2": dst}), sink=sink)

        assert poster.process(make_drop())
        assert timer.sleeps == pytest.approx([0.05])
        assert [n.target for n in sink.submitted] == [dst]

    def test_backoff_is_reset_per_drop(self, make_poster, make_drop, make_pod, timer):
        locator = FakeLocator({"1.1.1.1": make_pod(ip="1.1.1.1")}, failures=1)
        poster = make_poster(locator=locator)
        poster.process(make_drop())

        locator.failures = 1
        poster.process(make_drop(dst_ip="3.3.3.3"))

        assert timer.sleeps == pytest.approx([0.05, 0.05])


class TestRun:
    def test_warms_cache_then_stops_on_sentinel(self, make_poster, make_drop, metrics):
        locator = FakeLocator()
        poster = make_poster(locator=locator)
        drops = queue.Queue()
        drops.put(make_drop())
        drops.put(make_drop(dst_ip="3.3.3.3"))
        drops.put(None)

        poster.run(threading.Event(), drops)

        assert locator.run_called
        assert metrics.get_count("1.1.1.1", "2.2.2.2") == 1
        assert metrics.get_count("1.1.1.1", "3.3.3.3") == 1

    def test_stops_when_idle_after_shutdown(self, make_poster):
        shutdown = threading.Event()
        shutdown.set()
        make_poster().run(shutdown, queue.Queue())
