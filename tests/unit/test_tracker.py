"""
Unit tests for DeliveryTracker.

Covers:
  TestPrefetch        — unacked deliveries never exceed prefetch
  TestRoundRobin      — competing consumers share a queue in turn
  TestRequeue         — nack requeues at the head, cancel requeues in order
  TestSettlement      — ack / multiple / unknown tags / nack without requeue
  TestAutoAck         — dispatch counts as consumed
  TestBlockingGet     — get() waits for a message or a cancel
"""

import threading

import pytest

from minibroker.errors import NotFoundError, UnknownDeliveryTagError
from minibroker.models import Message
from minibroker.tracker import DeliveryTracker

Q = "work"


def _msg(text: str) -> Message:
    return Message(body=text.encode())


@pytest.fixture
def discarded():
    return []


@pytest.fixture
def tracker(discarded) -> DeliveryTracker:
    tracker = DeliveryTracker(on_discard=lambda queue, message: discarded.append(message.text()))
    tracker.add_queue(Q)
    return tracker


def _fill(tracker, *texts):
    for text in texts:
        tracker.enqueue(Q, _msg(text))


@pytest.mark.unit
class TestPrefetch:

    def test_unacked_never_exceeds_prefetch(self, tracker):
        consumer = tracker.register(Q, prefetch=2)
        _fill(tracker, "m0", "m1", "m2", "m3", "m4")
        assert consumer.unacked_count == 2
        assert tracker.depth(Q) == 3

    def test_ack_frees_capacity_for_the_next_message(self, tracker):
        consumer = tracker.register(Q, prefetch=2)
        _fill(tracker, "m0", "m1", "m2")
        first = consumer.get(timeout=0)
        consumer.ack(first.delivery_tag)
        assert consumer.unacked_count == 2
        assert tracker.depth(Q) == 0
        assert [d.message.text() for d in consumer.drain()] == ["m1", "m2"]

    def test_zero_prefetch_means_unlimited(self, tracker):
        consumer = tracker.register(Q, prefetch=0)
        _fill(tracker, *[f"m{i}" for i in range(50)])
        assert consumer.unacked_count == 50
        assert tracker.depth(Q) == 0

    def test_negative_prefetch_is_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.register(Q, prefetch=-1)

    def test_messages_wait_in_queue_without_consumers(self, tracker):
        _fill(tracker, "m0", "m1")
        assert tracker.depth(Q) == 2
        consumer = tracker.register(Q, prefetch=1)
        assert consumer.get(timeout=0).message.text() == "m0"
        assert tracker.depth(Q) == 1


@pytest.mark.unit
class TestRoundRobin:

    def test_competing_consumers_alternate(self, tracker):
        c1 = tracker.register(Q, prefetch=0)
        c2 = tracker.register(Q, prefetch=0)
        _fill(tracker, "m0", "m1", "m2", "m3")
        assert [d.message.text() for d in c1.drain()] == ["m0", "m2"]
        assert [d.message.text() for d in c2.drain()] == ["m1", "m3"]

    def test_busy_consumer_is_skipped(self, tracker):
        c1 = tracker.register(Q, prefetch=1)
        c2 = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0", "m1", "m2")
        d0 = c1.get(timeout=0)
        c2.get(timeout=0)
        assert tracker.depth(Q) == 1
        c1.ack(d0.delivery_tag)
        assert c1.get(timeout=0).message.text() == "m2"
        assert c2.get(timeout=0) is None

    def test_each_message_is_delivered_to_exactly_one_consumer(self, tracker):
        consumers = [tracker.register(Q, prefetch=0) for _ in range(3)]
        _fill(tracker, *[f"m{i}" for i in range(30)])
        seen = [d.message.text() for c in consumers for d in c.drain()]
        assert sorted(seen) == sorted(f"m{i}" for i in range(30))
        assert len(seen) == len(set(seen))


@pytest.mark.unit
class TestRequeue:

    def test_nack_requeues_at_head_and_marks_redelivered(self, tracker):
        consumer = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0", "m1")
        delivery = consumer.get(timeout=0)
        consumer.nack(delivery.delivery_tag, requeue=True)
        again = consumer.get(timeout=0)
        assert again.message.text() == "m0"
        assert again.redelivered is True
        assert again.delivery_tag != delivery.delivery_tag
        assert tracker.ready_messages(Q)[0].text() == "m1"

    def test_cancel_requeues_unacked_in_original_order(self, tracker):
        consumer = tracker.register(Q, prefetch=2)
        _fill(tracker, "m0", "m1", "m2")
        consumer.get(timeout=0)
        tracker.cancel(consumer)
        assert [m.text() for m in tracker.ready_messages(Q)] == ["m0", "m1", "m2"]
        assert consumer.cancelled

    def test_crashed_worker_message_goes_to_surviving_worker(self, tracker):
        crashed = tracker.register(Q, prefetch=1)
        survivor = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0", "m1")
        survivor_delivery = survivor.get(timeout=0)
        survivor.ack(survivor_delivery.delivery_tag)
        crashed.cancel()
        redelivered = survivor.get(timeout=0)
        assert redelivered.message.text() == "m0"
        assert redelivered.redelivered is True

    def test_cancel_reports_remaining_consumers(self, tracker):
        c1 = tracker.register(Q)
        tracker.register(Q)
        assert tracker.cancel(c1) == 1
        assert tracker.consumer_count(Q) == 1

    def test_cancel_twice_is_harmless(self, tracker):
        consumer = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0")
        consumer.cancel()
        consumer.cancel()
        assert tracker.depth(Q) == 1
        assert tracker.stats()["requeued"] == 1


@pytest.mark.unit
class TestSettlement:

    def test_ack_discards_message_permanently(self, tracker, discarded):
        consumer = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0")
        consumer.ack(consumer.get(timeout=0).delivery_tag)
        assert discarded == ["m0"]
        assert tracker.unacked_count(Q) == 0
        assert tracker.stats()["acked"] == 1

    def test_multiple_ack_settles_all_earlier_tags(self, tracker):
        consumer = tracker.register(Q, prefetch=3)
        _fill(tracker, "m0", "m1", "m2")
        deliveries = consumer.drain()
        consumer.ack(deliveries[1].delivery_tag, multiple=True)
        assert consumer.unacked_count == 1
        consumer.ack(deliveries[2].delivery_tag)
        assert consumer.unacked_count == 0

    def test_multiple_nack_requeues_all_earlier_tags_in_order(self, tracker):
        consumer = tracker.register(Q, prefetch=3)
        _fill(tracker, "m0", "m1", "m2", "m3")
        deliveries = consumer.drain()
        consumer.nack(deliveries[1].delivery_tag, requeue=True, multiple=True)
        # m0 and m1 jump ahead of m3 and fill the two freed slots
        redelivered = consumer.drain()
        assert [d.message.text() for d in redelivered] == ["m0", "m1"]
        assert all(d.redelivered for d in redelivered)
        assert [m.text() for m in tracker.ready_messages(Q)] == ["m3"]

    def test_unknown_tag_raises(self, tracker):
        with pytest.raises(UnknownDeliveryTagError):
            tracker.ack(999)

    def test_double_ack_raises(self, tracker):
        consumer = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0")
        tag = consumer.get(timeout=0).delivery_tag
        consumer.ack(tag)
        with pytest.raises(UnknownDeliveryTagError):
            consumer.ack(tag)

    def test_nack_without_requeue_drops_message(self, tracker, discarded):
        consumer = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0", "m1")
        consumer.nack(consumer.get(timeout=0).delivery_tag, requeue=False)
        assert discarded == ["m0"]
        assert tracker.stats()["dropped"] == 1
        assert consumer.get(timeout=0).message.text() == "m1"

    def test_ack_after_cancel_raises(self, tracker):
        consumer = tracker.register(Q, prefetch=1)
        _fill(tracker, "m0")
        tag = consumer.get(timeout=0).delivery_tag
        consumer.cancel()
        with pytest.raises(UnknownDeliveryTagError):
            tracker.ack(tag)

    def test_removed_queue_forgets_pulled_tags(self, tracker):
        holder = tracker.holder(Q, auto_ack=False)
        _fill(tracker, "m0")
        tag = tracker.pull(Q, holder).delivery_tag
        tracker.remove_queue(Q)
        assert tracker.unacked_count(Q) == 0
        assert holder._unacked == {}
        with pytest.raises(UnknownDeliveryTagError):
            tracker.ack(tag)


@pytest.mark.unit
class TestAutoAck:

    def test_auto_ack_consumer_is_never_blocked_by_prefetch(self, tracker, discarded):
        consumer = tracker.register(Q, auto_ack=True, prefetch=1)
        _fill(tracker, "m0", "m1", "m2")
        assert tracker.depth(Q) == 0
        assert consumer.unacked_count == 0
        assert discarded == ["m0", "m1", "m2"]

    def test_auto_ack_deliveries_are_lost_on_cancel(self, tracker):
        consumer = tracker.register(Q, auto_ack=True)
        _fill(tracker, "m0", "m1")
        consumer.cancel()
        assert tracker.depth(Q) == 0
        assert tracker.stats()["requeued"] == 0


@pytest.mark.unit
class TestBlockingGet:

    def test_get_waits_for_a_message_from_another_thread(self, tracker):
        consumer = tracker.register(Q, prefetch=1)
        timer = threading.Timer(0.05, tracker.enqueue, args=(Q, _msg("late")))
        timer.start()
        delivery = consumer.get(timeout=2.0)
        timer.join()
        assert delivery is not None
        assert delivery.message.text() == "late"

    def test_get_returns_none_after_timeout(self, tracker):
        consumer = tracker.register(Q, prefetch=1)
        assert consumer.get(timeout=0.05) is None

    def test_cancel_wakes_a_blocked_get(self, tracker):
        consumer = tracker.register(Q, prefetch=1)
        timer = threading.Timer(0.05, consumer.cancel)
        timer.start()
        assert consumer.get() is None
        timer.join()

    def test_iteration_stops_when_cancelled(self, tracker):
        consumer = tracker.register(Q, auto_ack=True)
        _fill(tracker, "m0", "m1")
        received = []
        for delivery in consumer:
            received.append(delivery.message.text())
            if len(received) == 2:
                consumer.cancel()
        assert received == ["m0", "m1"]

    def test_unknown_queue_raises_not_found(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.enqueue("missing", _msg("x"))
