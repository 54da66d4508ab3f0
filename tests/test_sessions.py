import pytest

from research_recall.sessions import SessionStore


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestSessionStore:
    def test_history_in_order(self, clock):
        sessions = SessionStore(clock=clock)
        sessions.append("s1", "user", "I need a survey tool")
        sessions.append("s1", "assistant", "Try Qualtrics")
        assert [m.content for m in sessions.history("s1")] == ["I need a survey tool", "Try Qualtrics"]
        assert [m.content for m in sessions.history("s1", limit=1)] == ["Try Qualtrics"]
        assert sessions.history("unknown") == []

    def test_messages_per_session_bounded(self, clock):
        sessions = SessionStore(max_messages=3, clock=clock)
        for i in range(5):
            sessions.append("s1", "user", f"m{i}")
        assert [m.content for m in sessions.history("s1")] == ["m2", "m3", "m4"]

    def test_idle_sessions_expire(self, clock):
        sessions = SessionStore(ttl_seconds=60, clock=clock)
        sessions.append("s1", "user", "hello")
        clock.now = 59
        assert len(sessions.history("s1")) == 1
        clock.now = 121
        assert sessions.history("s1") == []
        assert len(sessions) == 0

    def test_touch_extends_lifetime(self, clock):
        sessions = SessionStore(ttl_seconds=60, clock=clock)
        sessions.append("s1", "user", "a")
        clock.now = 50
        sessions.append("s1", "user", "b")
        clock.now = 100
        assert [m.content for m in sessions.history("s1")] == ["a", "b"]

    def test_least_recently_used_evicted(self, clock):
        sessions = SessionStore(max_sessions=2, clock=clock)
        sessions.append("a", "user", "1")
        sessions.append("b", "user", "1")
        sessions.append("a", "user", "2")
        sessions.append("c", "user", "1")
        assert sessions.history("b") == []
        assert len(sessions.history("a")) == 2
        assert len(sessions) == 2

    def test_evict_expired(self, clock):
        sessions = SessionStore(ttl_seconds=10, clock=clock)
        sessions.append("old", "user", "x")
        clock.now = 8
        sessions.append("new", "user", "y")
        clock.now = 15
        assert sessions.evict_expired() == 1
        assert sessions.history("new")

    def test_context_skips_system_messages(self, clock):
        sessions = SessionStore(clock=clock)
        sessions.append("s1", "system", "You are a research assistant")
        sessions.append("s1", "user", "coding interviews")
        context = sessions.context("s1", "qualitative analysis")
        assert [m.role for m in context.recent_messages] == ["user"]
        assert context.current_topic == "qualitative analysis"
        assert sessions.context("missing").is_empty()

    def test_clear(self, clock):
        sessions = SessionStore(clock=clock)
        sessions.append("s1", "user", "x")
        assert sessions.clear("s1") is True
        assert sessions.clear("s1") is False

    def test_limits_must_be_positive(self):
        with pytest.raises(ValueError):
            SessionStore(ttl_seconds=0)
        with pytest.raises(ValueError):
            SessionStore(max_messages=-1)
