from __future__ import annotations

import pytest

from conftest import FakeClock
from site_explorer.errors import GuardrailViolation
from site_explorer.guardrails import ActionHistory, GuardrailEngine, GuardrailPolicy, TokenBucket
from site_explorer.knowledge import ActionKind, FrontierEntry, Rule

BASE = "https://example.test"


def nav(url: str, label: str = "") -> FrontierEntry:
    return FrontierEntry(kind=ActionKind.NAVIGATE, target=url, depth=1, label=label)


def click(ref: str, label: str, role: str = "button") -> FrontierEntry:
    return FrontierEntry(kind=ActionKind.CLICK, target=ref, depth=1, label=label, source_url=f"{BASE}/", role=role)


def typing(ref: str, label: str, input_type: str = "", text: str = "hello") -> FrontierEntry:
    return FrontierEntry(
        kind=ActionKind.TYPE, target=ref, depth=1, label=label, source_url=f"{BASE}/",
        role="textbox", input_type=input_type, text=text,
    )


def _engine(**policy) -> GuardrailEngine:
    policy.setdefault("requests_per_second", 1000.0)
    policy.setdefault("burst_size", 1000)
    return GuardrailEngine(GuardrailPolicy(**policy))


class TestTokenBucket:
    def test_burst_then_refill(self) -> None:
        clock = FakeClock()
        bucket = TokenBucket(rate=2.0, burst=5, clock=clock)
        assert all(bucket.consume() for _ in range(5))
        assert not bucket.can_consume()
        assert bucket.wait_time() == pytest.approx(0.5)
        clock.advance(0.5)
        assert bucket.consume()
        assert not bucket.consume()

    def test_queries_do_not_consume(self) -> None:
        bucket = TokenBucket(rate=1.0, burst=1, clock=FakeClock())
        for _ in range(10):
            assert bucket.can_consume()
            assert bucket.available() == 1.0
            assert bucket.wait_time() == 0.0
        assert bucket.consume()

    def test_refill_is_capped_at_burst(self) -> None:
        clock = FakeClock()
        bucket = TokenBucket(rate=10.0, burst=3, clock=clock)
        clock.advance(60)
        assert bucket.available() == 3.0


class TestRateLimit:
    def test_denied_after_burst_and_no_token_spent_on_denial(self) -> None:
        clock = FakeClock()
        engine = GuardrailEngine(GuardrailPolicy(requests_per_second=1.0, burst_size=2), clock=clock)
        history = ActionHistory()
        assert engine.evaluate(nav(f"{BASE}/a"), history).allowed
        assert engine.evaluate(nav(f"{BASE}/b"), history).allowed
        verdict = engine.evaluate(nav(f"{BASE}/c"), history)
        assert verdict.rule == Rule.RATE_LIMIT
        clock.advance(1.0)
        assert engine.evaluate(nav(f"{BASE}/c"), history).allowed

    def test_denied_entry_does_not_consume(self) -> None:
        engine = GuardrailEngine(GuardrailPolicy(requests_per_second=1.0, burst_size=1), clock=FakeClock())
        history = ActionHistory()
        assert not engine.evaluate(nav("https://facebook.com/page"), history).allowed
        assert engine.evaluate(nav(f"{BASE}/a"), history).allowed


class TestUrlRules:
    @pytest.mark.parametrize("url", ["javascript:alert(1)", "mailto:a@example.test", "file:///etc/passwd"])
    def test_unsafe_protocol(self, url) -> None:
        assert _engine().evaluate(nav(url), ActionHistory()).rule == Rule.UNSAFE_PROTOCOL

    def test_blocked_domain_includes_subdomains(self) -> None:
        verdict = _engine().evaluate(nav("https://m.facebook.com/share"), ActionHistory())
        assert verdict.rule == Rule.BLOCKED_DOMAIN

    @pytest.mark.parametrize("url", [
        f"{BASE}/login",
        f"{BASE}/account/sign-in?next=/",
        f"{BASE}/wp-admin/",
        f"{BASE}/files/report.pdf",
        f"{BASE}/setup.exe",
        f"{BASE}/get?download=1",
    ])
    def test_blocked_patterns(self, url) -> None:
        assert _engine().evaluate(nav(url), ActionHistory()).rule == Rule.BLOCKED_PATTERN

    def test_ordinary_pages_pass(self) -> None:
        engine = _engine()
        for path in ("/", "/blog/login-tips", "/docs/admin-guide", "/pricing"):
            assert engine.evaluate(nav(BASE + path), ActionHistory()).allowed, path

    def test_per_domain_cap(self) -> None:
        engine = _engine(max_pages_per_domain=2)
        history = ActionHistory()
        assert engine.evaluate(nav(f"{BASE}/1"), history).allowed
        assert engine.evaluate(nav(f"{BASE}/2"), history).allowed
        assert engine.evaluate(nav(f"{BASE}/3"), history).rule == Rule.DOMAIN_CAP
        assert engine.evaluate(nav("https://other.test/1"), history).allowed


class TestActionRules:
    @pytest.mark.parametrize("label", ["Delete account", "Remove item", "Unsubscribe", "Buy now", "Log out"])
    def test_destructive_clicks(self, label) -> None:
        assert _engine().evaluate(click("#b", label), ActionHistory()).rule == Rule.DESTRUCTIVE_ACTION

    def test_destructive_link_label(self) -> None:
        verdict = _engine().evaluate(nav(f"{BASE}/account/42", "Delete account"), ActionHistory())
        assert verdict.rule == Rule.DESTRUCTIVE_ACTION

    def test_harmless_click(self) -> None:
        assert _engine().evaluate(click("#more", "Show more"), ActionHistory()).allowed

    def test_destructive_check_can_be_disabled(self) -> None:
        engine = _engine(prevent_destructive_actions=False)
        assert engine.evaluate(click("#b", "Delete"), ActionHistory()).allowed

    @pytest.mark.parametrize("entry", [
        typing("#pw", "Password", "password"),
        typing("#cc", "Card number"),
        typing("#field", "Enter value", text="my api key"),
        typing("input[name=ssn]", "Identifier"),
    ])
    def test_sensitive_typing(self, entry) -> None:
        assert _engine().evaluate(entry, ActionHistory()).rule == Rule.SENSITIVE_INPUT

    def test_plain_typing(self) -> None:
        assert _engine().evaluate(typing("#q", "Search", "search", "documentation"), ActionHistory()).allowed


class TestLoopDetection:
    def test_repeated_action(self) -> None:
        engine = _engine()
        history = ActionHistory(window=20)
        entry = click("#tab", "Next tab")
        for _ in range(2):
            assert engine.evaluate(entry, history).allowed
            history.record(entry)
        verdict = engine.evaluate(entry, history)
        assert verdict.rule == Rule.LOOP_DETECTED

    def test_window_forgets_old_actions(self) -> None:
        engine = _engine()
        history = ActionHistory(window=3)
        entry = nav(f"{BASE}/a")
        history.record(entry)
        history.record(entry)
        for i in range(3):
            history.record(nav(f"{BASE}/other{i}"))
        assert engine.evaluate(entry, history).allowed

    def test_ping_pong(self) -> None:
        engine = _engine(loop_max_repeats=5)
        history = ActionHistory()
        a, b = nav(f"{BASE}/a"), nav(f"{BASE}/b")
        for e in (a, b, a, b):
            history.record(e)
        verdict = engine.evaluate(a, history)
        assert verdict.rule == Rule.LOOP_DETECTED
        assert "Navigation loop" in verdict.reason

    def test_loop_check_can_be_disabled(self) -> None:
        engine = _engine(prevent_loops=False)
        history = ActionHistory()
        entry = nav(f"{BASE}/a")
        for _ in range(5):
            history.record(entry)
        assert engine.evaluate(entry, history).allowed


class TestEngineBookkeeping:
    def test_stats_and_reset(self) -> None:
        engine = _engine()
        history = ActionHistory()
        engine.evaluate(nav(f"{BASE}/a"), history)
        engine.evaluate(nav(f"{BASE}/login"), history)
        stats = engine.stats()
        assert stats["approved"] == 1
        assert stats["denials"] == {"blocked-pattern": 1}
        assert stats["domain_counts"] == {"example.test": 1}
        engine.reset()
        assert engine.stats()["approved"] == 0

    def test_invalid_policy(self) -> None:
        with pytest.raises(ValueError):
            GuardrailEngine(GuardrailPolicy(requests_per_second=0))
        with pytest.raises(ValueError):
            GuardrailEngine(GuardrailPolicy(blocked_patterns=["(unclosed"]))

    def test_violation_exception_carries_verdict(self) -> None:
        verdict = _engine().evaluate(nav(f"{BASE}/login"), ActionHistory())
        exc = GuardrailViolation(verdict)
        assert exc.verdict is verdict
        assert "blocked-pattern" in str(exc)
