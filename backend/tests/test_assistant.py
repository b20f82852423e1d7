"""
Tests for assistant.py and the /api/chatbot endpoint.
The AI provider is replaced by a fake client; nothing goes over the network.
"""
import asyncio
import pytest
import sys
import os
from datetime import date
from types import SimpleNamespace

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import anthropic
import httpx

from assistant import (
    AnthropicResponder,
    ChatContext,
    RuleBasedResponder,
    format_task_context,
    suggest_next,
    task_stats,
)
from models import Task
from prompts import SYSTEM_PROMPT

TODAY = date(2025, 3, 10)


def make_task(id, title, completed=False, due="", priority="medium", list_name="Personal"):
    return Task(
        id=id,
        title=title,
        completed=completed,
        due_date=due,
        priority=priority,
        list_name=list_name,
        created_at="2025-03-01T09:00:00+00:00",
    )


@pytest.fixture
def tasks():
    return [
        make_task(1, "File taxes", due="2025-03-01", priority="high"),
        make_task(2, "Buy milk", priority="low"),
        make_task(3, "Write report", due="2025-03-20", priority="high"),
        make_task(4, "Call mum", completed=True),
    ]


def ask(responder, message, tasks):
    context = ChatContext(email="alice@example.com", tasks=tasks, today=TODAY)
    return asyncio.run(responder.respond(message, context))


class TestTaskStats:
    def test_counts(self, tasks):
        assert task_stats(tasks, TODAY) == {
            "total": 4,
            "completed": 1,
            "pending": 3,
            "highPriority": 2,
            "overdue": 1,
        }

    def test_empty(self):
        assert task_stats([], TODAY)["total"] == 0

    def test_bad_due_date_is_not_overdue(self):
        assert task_stats([make_task(1, "x", due="someday")], TODAY)["overdue"] == 0

    def test_completed_tasks_are_never_overdue(self):
        assert task_stats([make_task(1, "x", due="2020-01-01", completed=True)], TODAY)["overdue"] == 0


class TestSuggestNext:
    def test_overdue_then_priority(self, tasks):
        titles = [t.title for t in suggest_next(tasks, TODAY)]
        assert titles == ["File taxes", "Write report", "Buy milk"]

    def test_skips_completed(self, tasks):
        assert "Call mum" not in [t.title for t in suggest_next(tasks, TODAY, limit=10)]


class TestTaskContext:
    def test_format(self, tasks):
        text = format_task_context(tasks)
        assert "- File taxes | Personal | high | 2025-03-01 | pending" in text
        assert "- Call mum | Personal | medium | no due date | done" in text

    def test_empty(self):
        assert format_task_context([]) == "(no tasks)"

    def test_system_prompt_placeholders(self):
        for placeholder in ("{today}", "{email}", "{stats}", "{task_context}"):
            assert placeholder in SYSTEM_PROMPT


class TestRuleBasedResponder:
    def test_overview(self, tasks):
        reply = ask(RuleBasedResponder(), "What tasks do I have?", tasks)
        assert "4 task(s)" in reply
        assert "3 pending" in reply

    def test_overdue(self, tasks):
        reply = ask(RuleBasedResponder(), "Anything overdue?", tasks)
        assert "File taxes" in reply
        assert "Write report" not in reply

    def test_plan(self, tasks):
        reply = ask(RuleBasedResponder(), "Help me plan my day", tasks)
        assert reply.index("File taxes") < reply.index("Write report")

    def test_motivation_mentions_progress(self, tasks):
        assert "1 of 4" in ask(RuleBasedResponder(), "Motivate me", tasks)

    def test_stress_picks_one_task(self, tasks):
        reply = ask(RuleBasedResponder(), "I feel overwhelmed", tasks)
        assert '"File taxes"' in reply

    def test_no_tasks(self):
        assert "don't have any tasks" in ask(RuleBasedResponder(), "show my tasks", [])

    def test_tip_is_a_word(self, tasks):
        """'multiple' must not trigger the tips rule."""
        reply = ask(RuleBasedResponder(), "I juggle multiple things", tasks)
        assert reply != RuleBasedResponder.TIPS
        assert ask(RuleBasedResponder(), "any tips?", tasks) == RuleBasedResponder.TIPS

    def test_unknown_message(self, tasks):
        assert "not sure" in ask(RuleBasedResponder(), "zzz", tasks)


class FakeMessages:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.text)])


class TestAnthropicResponder:
    def test_uses_model_reply(self, tasks):
        messages = FakeMessages(text="Do your taxes first.")
        responder = AnthropicResponder("key", "claude-test", client=SimpleNamespace(messages=messages))

        assert ask(responder, "What now?", tasks) == "Do your taxes first."
        call = messages.calls[0]
        assert call["model"] == "claude-test"
        assert call["messages"] == [{"role": "user", "content": "What now?"}]
        assert "2025-03-10" in call["system"]
        assert "File taxes" in call["system"]

    def test_falls_back_on_api_error(self, tasks):
        error = anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com"))
        responder = AnthropicResponder(
            "key", "claude-test", client=SimpleNamespace(messages=FakeMessages(error=error))
        )

        reply = ask(responder, "What tasks do I have?", tasks)
        assert reply == ask(RuleBasedResponder(), "What tasks do I have?", tasks)


class TestChatbotEndpoint:
    def test_chat(self, app_client, auth_headers):
        app_client.post("/api/tasks", json={"title": "Buy milk"}, headers=auth_headers)

        response = app_client.post("/api/chatbot", json={"message": "What tasks do I have?"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "1 task(s)" in body["response"]
        assert body["taskStats"]["total"] == 1
        assert body["taskStats"]["pending"] == 1

    def test_chat_uses_only_own_tasks(self, app_client, register_user):
        _, _, alice = register_user()
        _, _, bob = register_user("bob@example.com", "bob-secret")
        app_client.post("/api/tasks", json={"title": "Alice only"}, headers=alice)

        body = app_client.post("/api/chatbot", json={"message": "my tasks"}, headers=bob).json()
        assert body["taskStats"]["total"] == 0

    def test_chat_requires_message(self, app_client, auth_headers):
        response = app_client.post("/api/chatbot", json={"message": "  "}, headers=auth_headers)
        assert response.status_code == 400

    def test_chat_requires_auth(self, app_client):
        assert app_client.post("/api/chatbot", json={"message": "hi"}).status_code == 401
