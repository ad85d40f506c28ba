from __future__ import annotations

import json
import os

import pytest

from site_explorer.errors import StorageError
from site_explorer.knowledge import InteractiveElement, PageSnapshot
from site_explorer.memory import InMemoryBackend, LocalFileBackend, MemoryStore


def _snap(url: str, title: str) -> PageSnapshot:
    return PageSnapshot(url=url, title=title, tree={"tag": "body", "children": [{"tag": "h1", "text": title}]})


class _FailingBackend(InMemoryBackend):
    name = "failing"

    def write_state(self, record):
        raise StorageError("disk full", record["fingerprint"])


class TestMemoryStore:
    def test_record_new_then_known(self) -> None:
        store = MemoryStore("s1")
        state, novel = store.record(_snap("https://example.test/", "Home"), depth=0, links=["https://example.test/a"])
        assert novel is True
        assert state.depth == 0
        assert state.links == ("https://example.test/a",)

        again, novel = store.record(_snap("https://example.test/", "Home"), depth=3)
        assert novel is False
        assert again is state
        assert len(store) == 1

    def test_same_content_at_new_url_is_an_alias(self) -> None:
        store = MemoryStore("s1")
        first, _ = store.record(_snap("https://example.test/", "Home"), depth=0)
        second, novel = store.record(_snap("https://example.test/index.html", "Home"), depth=1)
        assert not novel
        assert second.fingerprint == first.fingerprint
        assert store.has_url("https://example.test/index.html")
        assert store.lookup_url("https://example.test/index.html#x") is first

    def test_list_visited_is_a_copy_in_visit_order(self) -> None:
        store = MemoryStore("s1")
        for i, title in enumerate(["A", "B", "C"]):
            store.record(_snap(f"https://example.test/{title.lower()}", title), depth=i)
        visited = store.list_visited()
        assert [p.title for p in visited] == ["A", "B", "C"]
        visited.clear()
        assert len(store.list_visited()) == 3

    def test_storage_failure_leaves_index_untouched(self) -> None:
        store = MemoryStore("s1", backend=_FailingBackend())
        snap = _snap("https://example.test/", "Home")
        with pytest.raises(StorageError):
            store.record(snap, depth=0)
        assert len(store) == 0
        assert not store.has_url("https://example.test/")

    def test_detach_backend_keeps_state(self) -> None:
        store = MemoryStore("s1", backend=_FailingBackend())
        with pytest.raises(StorageError):
            store.record(_snap("https://example.test/", "Home"), depth=0)
        store.detach_backend()
        assert isinstance(store.backend, InMemoryBackend)
        _, novel = store.record(_snap("https://example.test/", "Home"), depth=0)
        assert novel
        assert store.backend.read_visits("s1") == [store.list_visited()[0].fingerprint]

    def test_detach_replaces_derived_backend_but_keeps_plain_one(self) -> None:
        failing = _FailingBackend()
        store = MemoryStore("s1", backend=failing)
        store.detach_backend()
        assert store.backend is not failing
        assert type(store.backend) is InMemoryBackend

        plain = InMemoryBackend()
        store = MemoryStore("s1", backend=plain)
        store.detach_backend()
        assert store.backend is plain

    def test_disabled_memory_never_dedups_or_persists(self) -> None:
        backend = InMemoryBackend()
        store = MemoryStore("s1", backend=backend, enabled=False)
        _, first = store.record(_snap("https://example.test/", "Home"), depth=0)
        _, second = store.record(_snap("https://example.test/", "Home"), depth=1)
        assert first and second
        assert not store.has_url("https://example.test/")
        assert backend.read_visits("s1") == []

    def test_clear(self) -> None:
        store = MemoryStore("s1")
        store.record(_snap("https://example.test/", "Home"), depth=0)
        store.clear()
        assert len(store) == 0
        assert store.lookup_url("https://example.test/") is None


class TestLocalFileBackend:
    def test_layout_on_disk(self, tmp_path) -> None:
        backend = LocalFileBackend(tmp_path)
        store = MemoryStore("crawl_1", backend=backend)
        el = InteractiveElement("#go", "Go")
        state, _ = store.record(_snap("https://example.test/", "Home"), depth=0, elements=[el], screenshot=b"png")

        with open(tmp_path / "states" / f"{state.fingerprint}.json", encoding="utf-8") as fh:
            record = json.load(fh)
        assert record["url"] == "https://example.test/"
        assert record["elements"] == [el.to_dict()]
        assert record["screenshotPath"] == str(tmp_path / "screenshots" / f"{state.fingerprint}.png")
        lines = (tmp_path / "sessions" / "crawl_1.jsonl").read_text().splitlines()
        assert [json.loads(line)["fingerprint"] for line in lines] == [state.fingerprint]

    def test_reload_from_disk(self, tmp_path) -> None:
        store = MemoryStore("crawl_1", backend=LocalFileBackend(tmp_path))
        a, _ = store.record(_snap("https://example.test/", "Home"), depth=0)
        b, _ = store.record(_snap("https://example.test/about", "About"), depth=1)

        fresh = MemoryStore("crawl_1", backend=LocalFileBackend(tmp_path))
        assert fresh.load() == 2
        assert [p.fingerprint for p in fresh.list_visited()] == [a.fingerprint, b.fingerprint]
        assert fresh.lookup(b.fingerprint) == b

    def test_torn_log_line_is_discarded_and_isolated(self, tmp_path) -> None:
        backend = LocalFileBackend(tmp_path)
        store = MemoryStore("crawl_1", backend=backend)
        a, _ = store.record(_snap("https://example.test/", "Home"), depth=0)
        with open(tmp_path / "sessions" / "crawl_1.jsonl", "a", encoding="utf-8") as fh:
            fh.write('{"fingerprint": "abc')  # interrupted write
        b, _ = store.record(_snap("https://example.test/about", "About"), depth=1)

        assert backend.read_visits("crawl_1") == [a.fingerprint, b.fingerprint]

    def test_log_entry_without_state_is_skipped(self, tmp_path) -> None:
        backend = LocalFileBackend(tmp_path)
        store = MemoryStore("crawl_1", backend=backend)
        a, _ = store.record(_snap("https://example.test/", "Home"), depth=0)
        backend.append_visit("crawl_1", "f" * 64)

        fresh = MemoryStore("crawl_1", backend=backend)
        assert fresh.load() == 1
        assert fresh.list_visited()[0].fingerprint == a.fingerprint

    def test_retention_prunes_oldest_states(self, tmp_path) -> None:
        store = MemoryStore("crawl_1", backend=LocalFileBackend(tmp_path, max_states=2))
        for i in range(4):
            store.record(_snap(f"https://example.test/{i}", f"Page {i}"), depth=0)
        assert len(os.listdir(tmp_path / "states")) == 2

    def test_clear_removes_files(self, tmp_path) -> None:
        backend = LocalFileBackend(tmp_path)
        MemoryStore("crawl_1", backend=backend).record(_snap("https://example.test/", "Home"), depth=0)
        backend.clear()
        assert os.listdir(tmp_path / "states") == []
        assert os.listdir(tmp_path / "sessions") == []
