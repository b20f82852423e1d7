"""
taskmate-chat: command-line client for the Taskmate API.

Log in once, then chat with the assistant about your tasks or print a
summary of them. The bearer token is kept in a small session file so
separate invocations share the login.
"""
import argparse
import getpass
import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Optional

import requests

from logging_setup import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "http://localhost:4000"
DEFAULT_SESSION_FILE = Path.home() / ".taskmate" / "session.json"

CHAT_HELP = """Things you can ask:
  "What tasks do I have?"          overview of your list
  "What should I focus on?"        what to do next
  "What's overdue?"                late tasks
  "Motivate me" / "I feel overwhelmed"
  "Give me a productivity tip"
Commands: context (show your data), help, exit"""


class ApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ApiClient:
    """Thin JSON wrapper over the REST API.

    `session` is anything with a requests-style `request()` method.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, session=None, timeout: float = 15):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def request(self, method: str, path: str, data: Optional[dict] = None):
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = self.session.request(
                method, f"{self.base_url}{path}", json=data, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.debug("Request to %s failed: %s", path, e)
            raise ApiError(f"Network error: could not reach {self.base_url}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if resp.status_code >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ApiError(message or f"API error ({resp.status_code})", resp.status_code)
        return payload

    def health(self) -> dict:
        return self.request("GET", "/api/health")

    def login(self, email: str, password: str) -> dict:
        return self.request("POST", "/api/auth/login", {"email": email, "password": password})

    def register(self, email: str, password: str) -> dict:
        return self.request("POST", "/api/auth/register", {"email": email, "password": password})

    def me(self) -> dict:
        return self.request("GET", "/api/auth/me")["user"]

    def tasks(self) -> list[dict]:
        result = self.request("GET", "/api/tasks")
        # older servers wrap the list in {success, tasks}
        if isinstance(result, dict):
            return result.get("tasks", [])
        return result

    def chat(self, message: str) -> dict:
        return self.request("POST", "/api/chatbot", {"message": message})


# Session file

def load_session(path: Path) -> dict:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable session file %s: %s", path, e)
        return {}


def save_session(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


def clear_session(path: Path) -> None:
    path.unlink(missing_ok=True)


# Rendering

def summarize(user: dict, tasks: list[dict], today: Optional[date] = None) -> str:
    today = today or date.today()
    completed = sum(1 for t in tasks if t.get("completed"))
    high = sum(1 for t in tasks if t.get("priority") == "high" and not t.get("completed"))
    overdue = sum(
        1 for t in tasks
        if t.get("dueDate") and t["dueDate"][:10] < today.isoformat() and not t.get("completed")
    )
    lines = [
        "User Information:",
        f"  Email: {user.get('email')}",
    ]
    if user.get("createdAt"):
        lines.append(f"  Member since: {user['createdAt'][:10]}")
    lines += [
        "",
        "Task Summary:",
        f"  Total Tasks: {len(tasks)}",
        f"  Completed: {completed}",
        f"  Pending: {len(tasks) - completed}",
        f"  High Priority: {high}",
        f"  Overdue: {overdue}",
    ]
    if tasks:
        lines += ["", "Recent Tasks:"]
        # the API lists newest first
        for task in tasks[:5]:
            status = "[x]" if task.get("completed") else "[ ]"
            lines.append(
                f"  {status} {task['title']} ({task.get('list') or 'Personal'}, {task.get('priority', 'medium')})"
            )
    return "\n".join(lines)


# Commands

class Cli:
    def __init__(self, api_base: str, session_file: Path, http=None):
        self.api_base = api_base
        self.session_file = session_file
        self.session = load_session(session_file)
        token = self.session.get("token") if self.session.get("apiBase") == api_base else None
        self.client = ApiClient(api_base, token=token, session=http)

    def _credentials(self, args) -> tuple[str, str]:
        email = args.email or input("Enter your email: ").strip()
        if "@" not in email:
            raise ApiError("Please enter a valid email")
        password = args.password or getpass.getpass("Enter your password: ")
        return email, password

    def _store_login(self, response: dict) -> None:
        self.client.token = response["token"]
        self.session = {"token": response["token"], "user": response["user"], "apiBase": self.api_base}
        save_session(self.session_file, self.session)
        print(f"Welcome, {response['user']['email']}!")

    def _require_login(self) -> None:
        if not self.client.token:
            raise ApiError("Please login first using: taskmate-chat login")

    def login(self, args) -> int:
        self._store_login(self.client.login(*self._credentials(args)))
        print("Login successful!")
        return 0

    def register(self, args) -> int:
        self._store_login(self.client.register(*self._credentials(args)))
        print("Account created successfully!")
        return 0

    def logout(self, args) -> int:
        clear_session(self.session_file)
        self.client.token = None
        print("Logged out.")
        return 0

    def health(self, args) -> int:
        print(f"{self.api_base}: {self.client.health()}")
        return 0

    def context(self, args) -> int:
        self._require_login()
        print(summarize(self.client.me(), self.client.tasks()))
        return 0

    def chat(self, args) -> int:
        self._require_login()
        print("AI Assistant. Type \"exit\" to quit, \"context\" to see your data, \"help\" for ideas.\n")
        while True:
            try:
                message = input("You: ").strip()
            except EOFError:
                message = "exit"
            command = message.lower()
            if not message:
                continue
            if command in ("exit", "quit"):
                print("Goodbye!")
                return 0
            if command == "context":
                self.context(args)
                continue
            if command == "help":
                print(CHAT_HELP)
                continue
            try:
                reply = self.client.chat(message)
            except ApiError as e:
                print(f"Error: {e.message}\n")
                if e.status_code == 401:
                    return 1
                continue
            print(f"AI: {reply['response']}\n")
            stats = reply.get("taskStats")
            if stats:
                print(
                    f"Your Stats: {stats['completed']}/{stats['total']} tasks completed, "
                    f"{stats['pending']} pending\n"
                )

    def interactive(self, args) -> int:
        actions = [
            ("Login", self.login),
            ("Register", self.register),
            ("Start AI Chat", self.chat),
            ("Show Context", self.context),
        ]
        print("Task Chat - your AI productivity assistant\n")
        while True:
            for i, (label, _) in enumerate(actions, start=1):
                print(f"  {i}. {label}")
            print(f"  {len(actions) + 1}. Exit")
            try:
                choice = input("What would you like to do? ").strip()
            except EOFError:
                choice = str(len(actions) + 1)
            if choice == str(len(actions) + 1) or choice.lower() == "exit":
                print("Goodbye!")
                return 0
            if not choice.isdigit() or not 1 <= int(choice) <= len(actions):
                print("Please pick one of the numbers above.\n")
                continue
            try:
                actions[int(choice) - 1][1](args)
            except ApiError as e:
                print(f"Error: {e.message}")
            print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskmate-chat", description="AI chat interface for Taskmate")
    parser.add_argument("--api-base", default=os.environ.get("API_BASE", DEFAULT_API_BASE),
                        help="API server URL (env: API_BASE)")
    parser.add_argument("--session-file", type=Path,
                        default=Path(os.environ.get("TASKMATE_SESSION", DEFAULT_SESSION_FILE)),
                        help="Where the login token is kept (env: TASKMATE_SESSION)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")
    for name, help_text in (("login", "Login to your account"), ("register", "Create a new account")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--email")
        sub.add_argument("--password", help="Prompted for when omitted")
    subparsers.add_parser("logout", help="Forget the stored login")
    subparsers.add_parser("chat", help="Start AI chat with your tasks as context")
    subparsers.add_parser("context", help="Show your current data")
    subparsers.add_parser("health", help="Check the API server")
    interactive = subparsers.add_parser("interactive", aliases=["i"], help="Menu-driven mode (default)")
    interactive.set_defaults(command="interactive")
    return parser


def main(argv: Optional[list[str]] = None, http=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    cli = Cli(args.api_base, args.session_file, http=http)
    command = args.command or "interactive"
    if command == "interactive":
        # menu-driven login/register always prompt
        args.email = args.password = None
    try:
        return getattr(cli, command)(args)
    except ApiError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nGoodbye!")
        return 130


if __name__ == "__main__":
    sys.exit(main())
