"""Tests for the persistent offline command queue."""

import json

import pytest

from offline.command_queue import CommandStatus, OfflineQueue


@pytest.fixture
def queue_path(tmp_path):
    return tmp_path / "data" / "command_queue.json"


@pytest.fixture
def queue(queue_path):
    return OfflineQueue(queue_path)


class Recorder:
    """A send callable that accepts everything, or fails on chosen texts."""

    def __init__(self, fail_on=(), refuse_on=()):
        self.sent: list[str] = []
        self.fail_on = set(fail_on)
        self.refuse_on = set(refuse_on)

    async def __call__(self, text: str) -> bool:
        if text in self.fail_on:
            raise ConnectionError("channel dropped")
        if text in self.refuse_on:
            return False
        self.sent.append(text)
        return True


class TestOfflineQueue:

    def test_enqueue_assigns_id_and_pending(self, queue):
        entry = queue.enqueue("add tests")
        assert entry.status == CommandStatus.PENDING
        assert len(entry.id) == 36
        assert entry.timestamp > 0

    def test_persisted_immediately(self, queue, queue_path):
        queue.enqueue("A")
        data = json.loads(queue_path.read_text())
        assert [item["text"] for item in data] == ["A"]

    def test_survives_restart(self, queue, queue_path):
        for text in ("A", "B"):
            queue.enqueue(text)
        reloaded = OfflineQueue(queue_path)
        assert [e.text for e in reloaded.list()] == ["A", "B"]

    def test_corrupt_file_starts_empty(self, queue_path):
        queue_path.parent.mkdir(parents=True)
        queue_path.write_text("{not json")
        assert len(OfflineQueue(queue_path)) == 0

    def test_remove_and_clear(self, queue):
        a = queue.enqueue("A")
        queue.enqueue("B")
        assert queue.remove(a.id) is True
        assert queue.remove(a.id) is False
        assert [e.text for e in queue.list()] == ["B"]
        queue.clear()
        assert len(queue) == 0

    def test_list_is_a_copy(self, queue):
        queue.enqueue("A")
        queue.list()[0].text = "changed"
        assert queue.list()[0].text == "A"

    @pytest.mark.asyncio
    async def test_drain_is_fifo(self, queue, queue_path):
        for text in ("A", "B", "C"):
            queue.enqueue(text)

        send = Recorder()
        assert await queue.drain(send) == 3
        assert send.sent == ["A", "B", "C"]
        assert len(queue) == 0
        assert json.loads(queue_path.read_text()) == []

    @pytest.mark.asyncio
    async def test_drain_stops_at_failure(self, queue):
        for text in ("A", "B", "C"):
            queue.enqueue(text)

        send = Recorder(fail_on={"B"})
        assert await queue.drain(send) == 1
        assert send.sent == ["A"]

        remaining = queue.list()
        assert [e.text for e in remaining] == ["B", "C"]
        assert remaining[0].status == CommandStatus.FAILED
        assert remaining[1].status == CommandStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_entry_retried_first(self, queue):
        for text in ("A", "B"):
            queue.enqueue(text)
        await queue.drain(Recorder(fail_on={"A"}))

        send = Recorder()
        await queue.drain(send)
        assert send.sent == ["A", "B"]

    @pytest.mark.asyncio
    async def test_refused_entry_stays_pending(self, queue):
        queue.enqueue("A")
        assert await queue.drain(Recorder(refuse_on={"A"})) == 0
        assert queue.list()[0].status == CommandStatus.PENDING

    @pytest.mark.asyncio
    async def test_entries_added_during_drain_keep_order(self, queue):
        queue.enqueue("A")
        sent = []

        async def send(text):
            sent.append(text)
            if text == "A":
                queue.enqueue("B")
            return True

        await queue.drain(send)
        assert sent == ["A", "B"]
