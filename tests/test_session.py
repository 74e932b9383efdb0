"""
Tests for SurveySession, the host-facing API.
"""

import asyncio
from datetime import date

import pytest
from questengine.config import SessionConfig
from questengine.errors import StateError
from questengine.history import NavigationHistory
from questengine.navigation import NavigationState
from questengine.session import PresentationHooks, SurveySession, precalculate_context

SURVEY = """{"name":"Mod"}
[A] Pick
(1) Yes
(0) No
[B] Fruit [1] Apples [2] Pears [99*] None
[C] Contact |__|id=C_phone xor=contact| |__|id=C_email xor=contact|
[END] Thanks {$A}"""


class RecordingHooks(PresentationHooks):

    def __init__(self):
        self.shown = []
        self.html = []
        self.restored = []
        self.refused = []
        self.errors = []
        self.offered = []

    def show_question(self, record, html):
        self.shown.append(record.id)
        self.html.append(html)

    def restore_responses(self, question_id, value):
        self.restored.append((question_id, value))

    def mandatory_refused(self, question_id, unanswered, soft):
        self.refused.append((question_id, unanswered, soft))

    def notify_error(self, message):
        self.errors.append(message)

    def offer_submission(self, question_id):
        self.offered.append(question_id)


def make_session(definition=SURVEY, code=200, **config):
    """A session whose store callback records what it is sent."""
    sent = []

    def store(changed):
        sent.append(changed)
        return {"code": code}

    config.setdefault("await_persistence", True)
    hooks = RecordingHooks()
    session = SurveySession(definition, SessionConfig(store=store, **config), hooks)
    return session, hooks, sent


async def go_to(session, question_id):
    """Answer A and advance until question_id is active."""
    await session.start()
    session.answer("A", "1")
    while session.active_id != question_id:
        assert await session.next() is not None


def test_precalculate_context():
    """Context values are derived from the session date."""
    context = precalculate_context(date(2024, 3, 7), {"firstName": "Ann"})
    assert context["current_month_str"] == "March"
    assert context["quest_format_date"] == "2024-3-7"
    assert context["current_year"] == 2024
    assert context["firstName"] == "Ann"


class TestStartup:

    def test_start_shows_first_question(self):
        """start() shows the first question; the name header names the survey."""
        session, hooks, _ = make_session()
        record = asyncio.run(session.start())
        assert record.id == "A"
        assert hooks.shown == ["A"]
        assert session.survey_name == "Mod"
        assert session.state == NavigationState.ACTIVE

    def test_resume(self):
        """Retrieved state restores answers and the History cursor."""
        history = NavigationHistory()
        history.add("A")
        history.next()
        history.add("B")
        history.next()
        saved = {"A": "1", "treeJSON": history.to_json()}

        session, hooks, _ = make_session(retrieve=lambda: {"Mod": saved})
        assert asyncio.run(session.start()).id == "B"
        assert asyncio.run(session.previous()).id == "A"
        assert hooks.restored[-1] == ("A", "1")

    def test_today_rendered(self):
        """#today renders the configured session date."""
        session, hooks, _ = make_session("[A] Today is #today\n[END] x", today=date(2024, 3, 7))
        asyncio.run(session.start())
        assert "2024-3-7" in hooks.html[0]


class TestAnswers:

    def test_answer_unknown_field(self):
        """Only fields of the active question can be answered."""
        session, _, _ = make_session()
        with pytest.raises(StateError):
            session.answer("A", "1")
        asyncio.run(session.start())
        with pytest.raises(StateError):
            session.answer("B", "1")

    def test_toggle_exclusive(self):
        """An exclusive value clears the others and is cleared by them."""
        session, _, _ = make_session()
        asyncio.run(go_to(session, "B"))
        session.toggle("B", "1")
        session.toggle("B", "2")
        assert session.store.live_value("B") == ["1", "2"]
        session.toggle("B", "99")
        assert session.store.live_value("B") == ["99"]
        session.toggle("B", "1")
        assert session.store.live_value("B") == ["1"]
        session.toggle("B", "1")
        assert session.store.live_value("B") is None

    def test_xor_fields(self):
        """Answering one field of an XOR group clears the others."""
        session, _, _ = make_session()
        asyncio.run(go_to(session, "C"))
        session.answer("C_phone", "555")
        session.answer("C_email", "a@example.com")
        assert session.store.live_value("C") == {"C_email": "a@example.com"}

    def test_clear(self):
        """clear() removes the active question's answer."""
        session, _, _ = make_session()
        asyncio.run(session.start())
        session.answer("A", "1")
        session.clear()
        assert session.store.find_response_value("A") is None

    def test_echo_and_evaluate(self):
        """Stored answers are echoed and visible to expressions."""
        session, _, _ = make_session()
        asyncio.run(go_to(session, "C"))
        assert session.echo("A") == "1"
        assert session.echo("Q9", "nothing") == "nothing"
        assert session.evaluate("equals(A,1)")


class TestPersistence:

    def test_commit_on_next(self):
        """Each transition commits prefixed answers and the History."""
        session, _, sent = make_session()
        asyncio.run(go_to(session, "B"))
        assert sent[-1]["Mod.A"] == "1"
        assert "Mod.treeJSON" in sent[-1]
        assert session.store.committed["A"] == "1"

    def test_failed_commit_awaited(self):
        """A failed commit keeps the respondent on the same question."""
        session, hooks, _ = make_session(code=500)
        asyncio.run(session.start())
        session.answer("A", "1")
        assert asyncio.run(session.next()) is None
        assert session.active_id == "A"
        assert session.store.committed == {}
        assert session.store.pending == {"A": "1"}
        assert hooks.shown == ["A", "A"]
        assert len(hooks.errors) == 1

    def test_failed_commit_in_background(self):
        """Without await_persistence a failed commit rolls back once it settles."""
        session, hooks, _ = make_session(code=500, await_persistence=False)

        async def scenario():
            await session.start()
            session.answer("A", "1")
            record = await session.next()
            assert record.id == "B"
            await session.drain()

        asyncio.run(scenario())
        assert session.active_id == "A"
        assert hooks.shown == ["A", "B", "A"]
        assert len(hooks.errors) == 1

    def test_mandatory_refusal_reported(self):
        """A refused advance reaches the presentation hooks."""
        session, hooks, sent = make_session("[A!] Pick\n(1) Yes\n[END] x")
        asyncio.run(session.start())
        assert asyncio.run(session.next()) is None
        assert hooks.refused == [("A", 1, False)]
        assert sent == []


class TestSubmit:

    def test_submit_at_end(self):
        """Reaching END offers submission; submit() flags completion."""
        session, hooks, sent = make_session()
        asyncio.run(go_to(session, "END"))
        assert session.state == NavigationState.TERMINAL
        assert hooks.offered == ["END"]
        asyncio.run(session.submit())
        assert sent[-1]["Mod.COMPLETED"] is True
        assert session.completed

    def test_submit_before_end(self):
        """Only END can be submitted."""
        session, _, sent = make_session()
        asyncio.run(session.start())
        assert asyncio.run(session.submit()) is None
        assert sent == []
