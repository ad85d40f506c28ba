from __future__ import annotations

from site_explorer.frontier import DEFAULT_SCORING, FrontierPlanner, ScoringTable, drain, tokenize
from site_explorer.knowledge import ActionKind, InteractiveElement, PageSnapshot, PageState
from site_explorer.memory import MemoryStore

BASE = "https://example.test"


def _page(url: str, depth: int, links=(), elements=(), fp: str | None = None) -> PageState:
    return PageState(
        url=url,
        fingerprint=fp or url,
        title=url,
        depth=depth,
        links=tuple(href for href, _ in links),
        elements=tuple(elements),
        link_labels=tuple(links),
    )


class TestScoring:
    def test_tokenize(self) -> None:
        assert tokenize("Read-More /blog?page=2") == ["read", "more", "blog", "page", "2"]

    def test_category_counted_once(self) -> None:
        assert DEFAULT_SCORING.score("next page") == 3.0
        assert DEFAULT_SCORING.score("blog article") == 2.0

    def test_multi_word_tokens_need_adjacent_words(self) -> None:
        assert DEFAULT_SCORING.score("sign in") == -10.0
        assert DEFAULT_SCORING.score("sign the guestbook in") == 0.0

    def test_penalties(self) -> None:
        assert DEFAULT_SCORING.score("Delete account") == -30.0
        assert DEFAULT_SCORING.matched("Privacy policy") == ["utility"]

    def test_custom_table(self) -> None:
        table = ScoringTable.from_dict({"recipes": {"weight": 5, "tokens": ["recipe", "ingredients"]}})
        assert table.score("Pasta recipe") == 5.0
        assert table.score("About") == 0.0


class TestFrontierPlanner:
    def test_strict_breadth_first(self) -> None:
        planner = FrontierPlanner(MemoryStore("s"))
        planner.seed(f"{BASE}/")
        home = _page(f"{BASE}/", 0, links=[(f"{BASE}/a", "A"), (f"{BASE}/b", "B")])
        deep = _page(f"{BASE}/a", 1, links=[(f"{BASE}/next", "Next page")])

        assert planner.next().target == f"{BASE}/"
        planner.enqueue(home)
        planner.enqueue(deep)  # depth 2 candidate with a high score
        depths = [e.depth for e in drain(planner)]
        assert depths == [1, 1, 2]

    def test_best_score_first_within_a_level(self) -> None:
        planner = FrontierPlanner(MemoryStore("s"))
        page = _page(f"{BASE}/", 0, links=[
            (f"{BASE}/privacy", "Privacy"),
            (f"{BASE}/login", "Log in"),
            (f"{BASE}/about", "About"),
            (f"{BASE}/blog", "Blog"),
            (f"{BASE}/contact", "Contact"),
        ])
        planner.enqueue(page)
        order = [e.target for e in drain(planner)]
        assert order == [f"{BASE}/blog", f"{BASE}/about", f"{BASE}/contact", f"{BASE}/privacy", f"{BASE}/login"]

    def test_ordering_is_deterministic(self) -> None:
        def run():
            planner = FrontierPlanner(MemoryStore("s"))
            planner.enqueue(_page(f"{BASE}/", 0, links=[(f"{BASE}/{i}", f"Item {i}") for i in range(10)]))
            return [e.target for e in drain(planner)]

        assert run() == run()

    def test_links_and_elements_become_entries(self) -> None:
        planner = FrontierPlanner(MemoryStore("s"))
        page = _page(
            f"{BASE}/", 0,
            links=[(f"{BASE}/docs", "Docs")],
            elements=[
                InteractiveElement("#q", "Search", "searchbox"),
                InteractiveElement("#menu", "Menu", "button"),
                InteractiveElement("#icon", "  ", "button"),
            ],
        )
        added = planner.enqueue(page)
        kinds = {e.target: e.kind for e in added}
        assert kinds == {f"{BASE}/docs": ActionKind.NAVIGATE, "#q": ActionKind.TYPE, "#menu": ActionKind.CLICK}
        assert all(e.depth == 1 and e.source_url == f"{BASE}/" for e in added)
        assert added[0].label == "Docs"

    def test_elements_can_be_disabled(self) -> None:
        planner = FrontierPlanner(MemoryStore("s"), include_elements=False)
        page = _page(f"{BASE}/", 0, elements=[InteractiveElement("#menu", "Menu")])
        assert planner.enqueue(page) == []

    def test_allowed_domains(self) -> None:
        planner = FrontierPlanner(MemoryStore("s"), allowed_domains=["example.test"])
        page = _page(f"{BASE}/", 0, links=[
            ("https://docs.example.test/x", "Docs"),
            ("https://other.test/", "Other"),
        ])
        added = planner.enqueue(page)
        assert [e.target for e in added] == ["https://docs.example.test/x"]
        assert planner.filtered_out == 1
        assert planner.seed("https://other.test/") is None

    def test_no_duplicates_and_no_known_urls(self) -> None:
        memory = MemoryStore("s")
        memory.record(PageSnapshot(url=f"{BASE}/seen", title="Seen"), depth=0)
        planner = FrontierPlanner(memory)
        page = _page(f"{BASE}/", 0, links=[
            (f"{BASE}/a", "A"), (f"{BASE}/a#frag", "A again"), (f"{BASE}/seen", "Seen"),
        ])
        assert [e.target for e in planner.enqueue(page)] == [f"{BASE}/a"]

        planner.next()
        # dequeued entries are never handed out again
        assert planner.enqueue(_page(f"{BASE}/b", 1, links=[(f"{BASE}/a", "A")], fp="b")) == []
        assert planner.next() is None

    def test_revisits_allowed_without_memory(self) -> None:
        planner = FrontierPlanner(MemoryStore("s", enabled=False))
        planner.enqueue(_page(f"{BASE}/", 0, links=[(f"{BASE}/a", "A")]))
        assert planner.next().target == f"{BASE}/a"
        added = planner.enqueue(_page(f"{BASE}/b", 1, links=[(f"{BASE}/a", "A")], fp="b"))
        assert [e.target for e in added] == [f"{BASE}/a"]

    def test_pending_matches_next_order(self) -> None:
        planner = FrontierPlanner(MemoryStore("s"))
        planner.enqueue(_page(f"{BASE}/", 0, links=[(f"{BASE}/about", "About"), (f"{BASE}/blog", "Blog")]))
        pending = [e.target for e in planner.pending()]
        assert pending == [e.target for e in drain(planner)]
        assert len(planner) == 0
