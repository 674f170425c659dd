from datetime import timedelta

import pytest

from models import QueueItemStatus, QueueItemType
from offline_queue import OfflineQueue

from conftest import NOW


def enqueue_three(queue):
    return [
        queue.enqueue(QueueItemType.TRANSACTION, {"n": i}, now=NOW + timedelta(seconds=i))
        for i in range(3)
    ]


def always(result):
    return {t: (lambda payload: result) for t in QueueItemType}


class TestDrain:
    def test_fifo_batch(self, queue):
        ids = enqueue_three(queue)
        report = queue.drain(always(True), batch_size=2, now=NOW + timedelta(minutes=1))

        assert report.attempted == ids[:2]
        assert report.succeeded == ids[:2]
        remaining = queue.list_items()
        assert [i.id for i in remaining] == [ids[2]]
        assert remaining[0].status == QueueItemStatus.PENDING

    def test_oldest_first_regardless_of_insert_order(self, queue):
        late = queue.enqueue(QueueItemType.QR_SCAN, {}, now=NOW + timedelta(seconds=5))
        early = queue.enqueue(QueueItemType.QR_SCAN, {}, now=NOW)
        assert [i.id for i in queue.pending_items(now=NOW + timedelta(minutes=1))] == [early, late]

    def test_handler_receives_payload(self, queue):
        seen = []
        queue.enqueue(QueueItemType.INVENTORY_SYNC, {"stationId": "s1", "liters": 7.69}, now=NOW)
        queue.drain({QueueItemType.INVENTORY_SYNC: lambda p: seen.append(p) or True}, now=NOW)
        assert seen == [{"stationId": "s1", "liters": 7.69}]

    def test_failure_backs_off(self, queue):
        item_id = queue.enqueue(QueueItemType.TRANSACTION, {}, now=NOW)
        report = queue.drain(always(False), now=NOW)

        assert report.failed == [item_id]
        item = queue.get(item_id)
        assert item.status == QueueItemStatus.FAILED
        assert item.retry_count == 1
        assert item.next_attempt_at == NOW + timedelta(seconds=2)
        assert item.last_error == "resolver returned false"

        assert queue.pending_items(now=NOW + timedelta(seconds=1)) == []
        assert [i.id for i in queue.pending_items(now=NOW + timedelta(seconds=2))] == [item_id]

    def test_exception_counts_as_failure(self, queue):
        item_id = queue.enqueue(QueueItemType.QR_SCAN, {}, now=NOW)

        def boom(payload):
            raise TimeoutError("backend timed out")

        report = queue.drain({QueueItemType.QR_SCAN: boom}, now=NOW)
        assert report.failed == [item_id]
        assert queue.get(item_id).last_error == "backend timed out"

    def test_missing_handler_is_failure(self, queue):
        item_id = queue.enqueue(QueueItemType.QR_SCAN, {}, now=NOW)
        queue.drain({}, now=NOW)
        assert queue.get(item_id).retry_count == 1

    def test_dead_letter_after_max_retries(self, tmp_path):
        queue = OfflineQueue(str(tmp_path / "dl.db"), backoff_base=1, max_retries=2)
        item_id = queue.enqueue(QueueItemType.TRANSACTION, {}, now=NOW)

        queue.drain(always(False), now=NOW)
        report = queue.drain(always(False), now=NOW + timedelta(seconds=10))

        assert report.dead_lettered == [item_id]
        assert queue.get(item_id).status == QueueItemStatus.DEAD_LETTER
        assert queue.drain(always(True), now=NOW + timedelta(hours=1)).attempted == []

        assert queue.requeue_dead_letters() == 1
        item = queue.get(item_id)
        assert (item.status, item.retry_count, item.next_attempt_at) == (QueueItemStatus.PENDING, 0, None)

    def test_claimed_item_is_skipped(self, queue):
        first, second = (queue.enqueue(QueueItemType.QR_SCAN, {}, now=NOW + timedelta(seconds=i))
                         for i in range(2))

        def steal_next(payload):
            # a concurrent drain grabs the second item while we work on the first
            queue.update_status(second, QueueItemStatus.PROCESSING)
            return True

        report = queue.drain({QueueItemType.QR_SCAN: steal_next}, now=NOW + timedelta(minutes=1))
        assert report.succeeded == [first]
        assert report.skipped == [second]
        assert queue.get(second).retry_count == 0


class TestMaintenance:
    def test_backoff_delay(self, queue):
        assert queue.backoff_delay(0) == timedelta(0)
        assert queue.backoff_delay(1) == timedelta(seconds=2)
        assert queue.backoff_delay(3) == timedelta(seconds=8)
        assert queue.backoff_delay(20) == timedelta(seconds=300)

    def test_recover_stale(self, queue):
        item_id = queue.enqueue(QueueItemType.QR_SCAN, {}, now=NOW)
        queue.update_status(item_id, QueueItemStatus.PROCESSING)
        assert queue.pending_items(now=NOW) == []
        assert queue.recover_stale() == 1
        assert queue.get(item_id).status == QueueItemStatus.PENDING

    def test_clear_completed(self, queue):
        a, b, c = enqueue_three(queue)
        queue.update_status(a, QueueItemStatus.COMPLETED)
        queue.update_status(b, QueueItemStatus.COMPLETED)
        assert queue.clear_completed() == 2
        assert [i.id for i in queue.list_items()] == [c]

    def test_increment_and_remove(self, queue):
        item_id = queue.enqueue(QueueItemType.QR_SCAN, {}, now=NOW)
        assert queue.increment_retry_count(item_id)
        assert queue.get(item_id).retry_count == 1
        assert queue.remove(item_id)
        assert not queue.remove(item_id)
        assert queue.get(item_id) is None

    def test_backlog(self, queue):
        a, b, c = enqueue_three(queue)
        queue.update_status(c, QueueItemStatus.DEAD_LETTER)
        counts = queue.backlog()
        assert counts["PENDING"] == 2
        assert counts["DEAD_LETTER"] == 1
        assert counts["total"] == 3

    def test_list_by_status(self, queue):
        a, b, c = enqueue_three(queue)
        queue.update_status(b, QueueItemStatus.FAILED)
        assert [i.id for i in queue.list_items(QueueItemStatus.FAILED)] == [b]

    def test_survives_restart(self, tmp_path):
        path = str(tmp_path / "restart.db")
        q1 = OfflineQueue(path)
        item_id = q1.enqueue(QueueItemType.TRANSACTION, {"id": "RDM-1", "amount": 500}, now=NOW)
        q1.conn.close()

        q2 = OfflineQueue(path)
        item = q2.get(item_id)
        assert q2.durable
        assert item.payload == {"id": "RDM-1", "amount": 500}
        assert item.created_at == NOW

    def test_unopenable_path_falls_back_to_memory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        q = OfflineQueue(str(blocker / "sub" / "queue.db"))
        assert not q.durable
        assert q.enqueue(QueueItemType.QR_SCAN, {}) > 0

    @pytest.mark.parametrize("bad", ["NOPE", ""])
    def test_unknown_item_type(self, queue, bad):
        with pytest.raises(ValueError):
            queue.enqueue(bad, {})
