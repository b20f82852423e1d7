"""
Chat assistant behind POST /api/chatbot.

Both responders implement `respond(message, context) -> str` so the endpoint
(and tests) never care which one is configured.
"""
import logging
import re
from datetime import date
from typing import Optional, Protocol

import anthropic
from pydantic import BaseModel

from models import Task
from prompts import SYSTEM_PROMPT

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}
MAX_CONTEXT_TASKS = 50


class ChatContext(BaseModel):
    email: str
    tasks: list[Task]
    today: date


class Responder(Protocol):
    async def respond(self, message: str, context: ChatContext) -> str: ...


def due_date_of(task: Task) -> Optional[date]:
    """Parse the date part of dueDate; empty or malformed values count as no due date."""
    if not task.due_date:
        return None
    try:
        return date.fromisoformat(task.due_date[:10])
    except ValueError:
        return None


def is_overdue(task: Task, today: date) -> bool:
    due = due_date_of(task)
    return not task.completed and due is not None and due < today


def task_stats(tasks: list[Task], today: date) -> dict:
    completed = sum(1 for t in tasks if t.completed)
    return {
        "total": len(tasks),
        "completed": completed,
        "pending": len(tasks) - completed,
        "highPriority": sum(1 for t in tasks if t.priority == "high" and not t.completed),
        "overdue": sum(1 for t in tasks if is_overdue(t, today)),
    }


def suggest_next(tasks: list[Task], today: date, limit: int = 3) -> list[Task]:
    """Pending tasks ordered overdue first, then by priority, then by due date."""
    pending = [t for t in tasks if not t.completed]
    return sorted(
        pending,
        key=lambda t: (
            not is_overdue(t, today),
            PRIORITY_RANK.get(t.priority, 1),
            due_date_of(t) or date.max,
            t.id,
        ),
    )[:limit]


def format_task_context(tasks: list[Task]) -> str:
    if not tasks:
        return "(no tasks)"
    lines = []
    for task in tasks[:MAX_CONTEXT_TASKS]:
        status = "done" if task.completed else "pending"
        due = task.due_date or "no due date"
        lines.append(f"- {task.title} | {task.list_name} | {task.priority} | {due} | {status}")
    if len(tasks) > MAX_CONTEXT_TASKS:
        lines.append(f"... and {len(tasks) - MAX_CONTEXT_TASKS} more")
    return "\n".join(lines)


def _titles(tasks: list[Task]) -> str:
    return ", ".join(f'"{t.title}"' for t in tasks)


class RuleBasedResponder:
    """Keyword rules over the user's task statistics. No network involved."""

    HELP = (
        "You can ask me things like: \"What tasks do I have?\", \"What should I focus on?\", "
        "\"What's overdue?\", \"Motivate me\", \"I feel overwhelmed\" or \"Give me a productivity tip\"."
    )
    TIPS = (
        "Try this: pick your single most important task, block 25 minutes for it with no "
        "distractions, then take a 5 minute break. Break big tasks into subtasks so each "
        "step is obvious."
    )

    async def respond(self, message: str, context: ChatContext) -> str:
        text = message.lower()
        tasks = context.tasks
        stats = task_stats(tasks, context.today)

        if text.strip() in ("help", "?") or "what can you" in text:
            return self.HELP

        if "overdue" in text or "behind" in text:
            overdue = [t for t in tasks if is_overdue(t, context.today)]
            if not overdue:
                return "Nothing is overdue. Nice work keeping on top of things!"
            return f"You have {len(overdue)} overdue task(s): {_titles(overdue)}. Start with the oldest one."

        if any(word in text for word in ("overwhelm", "stress", "anxious", "too much")):
            nxt = suggest_next(tasks, context.today, limit=1)
            if not nxt:
                return "Your list is clear, so take a breath. There is nothing you need to do right now."
            return (
                f"It's okay to feel that way. You have {stats['pending']} pending task(s), but you only "
                f"need to do one thing next: \"{nxt[0].title}\". Focus on that and ignore the rest for now."
            )

        if "motivat" in text or "encourag" in text:
            if stats["completed"]:
                return (
                    f"You've already completed {stats['completed']} of {stats['total']} tasks. "
                    "Keep the momentum going, one task at a time!"
                )
            return "Every finished list starts with one completed task. Pick a small one and get your first win!"

        if any(word in text for word in ("plan", "priorit", "focus", "next", "what should")):
            nxt = suggest_next(tasks, context.today)
            if not nxt:
                return "You have no pending tasks. A good moment to plan what's coming up and add it to your list."
            return f"I'd focus on these next: {_titles(nxt)}."

        if "productiv" in text or re.search(r"\btips?\b", text):
            return self.TIPS

        if "task" in text or "todo" in text or "to do" in text:
            if not tasks:
                return "You don't have any tasks yet. Add one to get started!"
            return (
                f"You have {stats['total']} task(s): {stats['completed']} completed and "
                f"{stats['pending']} pending ({stats['highPriority']} high priority, "
                f"{stats['overdue']} overdue)."
            )

        if re.search(r"\b(hi|hello|hey)\b", text):
            return f"Hello! You have {stats['pending']} pending task(s). How can I help?"

        return (
            f"I'm not sure how to help with that. You currently have {stats['pending']} pending "
            f"task(s). {self.HELP}"
        )


class AnthropicResponder:
    def __init__(self, api_key: str, model: str, fallback: Optional[Responder] = None, client=None):
        self.model = model
        self.fallback = fallback or RuleBasedResponder()
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    def system_prompt(self, context: ChatContext) -> str:
        stats = task_stats(context.tasks, context.today)
        return SYSTEM_PROMPT.format(
            today=context.today.isoformat(),
            email=context.email,
            stats=", ".join(f"{k}: {v}" for k, v in stats.items()),
            task_context=format_task_context(context.tasks),
        )

    async def respond(self, message: str, context: ChatContext) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=512,
                system=self.system_prompt(context),
                messages=[{"role": "user", "content": message}],
            )
        except anthropic.APIError as e:
            logger.warning("AI request failed, using rule-based reply: %s", e)
            return await self.fallback.respond(message, context)

        text = "".join(block.text for block in response.content if block.type == "text").strip()
        if not text:
            return await self.fallback.respond(message, context)
        return text


def create_responder(settings) -> Responder:
    if settings.anthropic_configured:
        return AnthropicResponder(settings.anthropic_api_key, settings.anthropic_model)
    logger.warning("ANTHROPIC_API_KEY not configured - chat uses rule-based replies")
    return RuleBasedResponder()
