from __future__ import annotations

import threading
from datetime import datetime, timedelta

from tickrunner.core.db import make_engine, make_session_factory
from tickrunner.queues import QueueFactory, QueueItem, QueueType


class TestSqlQueue:
    def test_fifo(self, queues):
        """Items come out in the order they became available."""
        q = queues.make_queue(QueueType.MAIL)
        for n in range(3):
            q.push({"n": n})
        assert [q.pop().data["n"] for _ in range(3)] == [0, 1, 2]
        assert q.pop() is None

    def test_pop_is_destructive(self, queues):
        """A popped item is gone; peek leaves it in place."""
        q = queues.make_queue("mail")
        q.push("hello")
        assert q.peek().data == "hello"
        assert q.count() == 1
        assert q.pop().data == "hello"
        assert q.count() == 0

    def test_future_items_wait(self, queues, clock):
        """An item pushed for later is invisible until its time comes."""
        q = queues.make_queue(QueueType.WEBPUSH)
        q.push({"later": True}, timedelta(minutes=5))
        q.push({"later": False})
        assert q.pop().data == {"later": False}
        assert q.pop() is None
        clock.advance(minutes=5)
        assert q.pop().data == {"later": True}

    def test_partitions_are_isolated(self, queues):
        """Site queues and queue types never see each other's items."""
        site1 = queues.make_queue(QueueType.EXTENSIONS, 1)
        site2 = queues.make_queue(QueueType.EXTENSIONS, 2)
        plugins = queues.make_queue(QueueType.PLUGINS, 1)
        site1.push(10)
        site2.push(20)
        plugins.push(30)
        assert site1.pop().data == 10
        assert site1.pop() is None
        assert site2.count() == 1
        assert plugins.count() == 1

    def test_count_and_clear_by_condition(self, queues):
        """Conditions match dotted paths inside the item data."""
        q = queues.make_queue(QueueType.EXTENSIONS, 1)
        q.push({"id": 1, "mode": "update"})
        q.push({"id": 2, "mode": "email"})
        q.push({"id": 3, "mode": "update"})
        assert q.count_by_condition({"mode": "update"}) == 2
        assert q.count_by_condition({"data.id": 2, "siteId": 1}) == 1
        assert q.clear({"mode": "update"}) == 2
        assert q.count() == 1
        assert q.clear() == 1

    def test_requeue_goes_to_the_tail(self, queues):
        """A requeued item is handed out after the ones already waiting."""
        q = queues.make_queue(QueueType.MAIL)
        q.push("a")
        q.push("b")
        first = q.pop()
        q.requeue(first)
        assert [q.pop().data, q.pop().data] == ["b", "a"]

    def test_whence_forms(self, queues, clock):
        """None, 'now', datetimes, timedeltas, timestamps and ISO strings are understood."""
        q = queues.make_queue(QueueType.MAIL)
        now = clock()
        assert q.normalise_time(None) == now
        assert q.normalise_time("now") == now
        assert q.normalise_time(timedelta(hours=1)) == now + timedelta(hours=1)
        assert q.normalise_time(datetime(2030, 1, 1)) == datetime(2030, 1, 1)
        assert q.normalise_time(0) == datetime(1970, 1, 1)
        assert q.normalise_time("2030-01-01T02:00:00+02:00") == datetime(2030, 1, 1)
        assert q.normalise_time("garbage") == now

    def test_push_returns_identified_item(self, queues):
        """push() reports the id and partition the item landed in."""
        item = queues.make_queue(QueueType.EXTENSIONS, 4).push(QueueItem(data={"id": 1}))
        assert item.id is not None
        assert (item.queue_type, item.site_id) == ("extensions", 4)

    def test_concurrent_pops_never_share_an_item(self, engine, queues, clock):
        """Two runners on their own connections drain one partition without duplicates."""
        pushed = [queues.make_queue(QueueType.MAIL).push({"n": n}).id for n in range(40)]
        engines = [make_engine(str(engine.url)) for _ in range(2)]
        start = threading.Barrier(len(engines))
        popped = [[] for _ in engines]
        errors = []

        def drain(index, own_engine):
            q = QueueFactory(make_session_factory(own_engine), clock=clock).make_queue(QueueType.MAIL)
            try:
                start.wait()
                while True:
                    item = q.pop()
                    if item is None:
                        break
                    popped[index].append(item.id)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=drain, args=(i, e)) for i, e in enumerate(engines)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        for e in engines:
            e.dispose()

        assert errors == []
        everything = popped[0] + popped[1]
        assert len(everything) == len(set(everything))
        assert sorted(everything) == sorted(pushed)


class TestQueueItem:
    def test_json(self):
        """The wire form carries queue type, site and data."""
        item = QueueItem(data={"id": 5}, queue_type="extensions", site_id=2)
        again = QueueItem.from_json(item.to_json())
        assert (again.data, again.queue_type, again.site_id) == ({"id": 5}, "extensions", 2)

    def test_get(self):
        """Dotted lookups inside data."""
        item = QueueItem(data={"a": {"b": 1}})
        assert item.get("a.b") == 1
        assert item.get("data.a.b") == 1
        assert item.get("a.c", "x") == "x"
