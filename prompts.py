"""
Interactive surface: numbered menus, free text, yes/no and masked input.

All prompts go through ``Prompter`` so the workflow can be driven by scripted
answers in tests.  Invalid answers re-prompt in place up to
``max_attempts`` times; after that ``PromptAbort`` is raised.
"""
from __future__ import annotations

import getpass
import os
import re
from enum import Enum
from typing import Callable, Sequence

MAX_PROMPT_ATTEMPTS = int(os.environ.get("PAW_MAX_PROMPT_ATTEMPTS", "5"))

_INTEGER = re.compile(r"\s*\d+\s*")


class PromptAbort(Exception):
    """The operator exhausted the retry budget of a prompt."""


class Navigation(Enum):
    CONTINUE = "continue"
    BACK = "back"
    CANCEL = "cancel"


def parse_selection(text: str, count: int) -> int | None:
    """Parse a 1-based menu choice; ``None`` unless an integer in ``1..count``."""
    if not text or not _INTEGER.fullmatch(text):
        return None
    number = int(text)
    if 1 <= number <= count:
        return number
    return None


class Prompter:
    """Console prompts with a retry budget."""

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        secret_func: Callable[[str], str] = getpass.getpass,
        output_func: Callable[[str], None] = print,
        max_attempts: int = MAX_PROMPT_ATTEMPTS,
    ):
        self._input = input_func
        self._secret = secret_func
        self._output = output_func
        self.max_attempts = max(1, max_attempts)

    def say(self, message: str) -> None:
        self._output(message)

    def ask(self, message: str, default: str = "") -> str:
        """Free-text answer; blank keeps *default*."""
        suffix = f" [{default}]" if default else ""
        answer = self._input(f"{message}{suffix}: ").strip()
        return answer or default

    def ask_valid(
        self,
        message: str,
        validator: Callable[[str], bool],
        error: str,
        default: str = "",
    ) -> str:
        """Ask until *validator* accepts the answer."""
        for _ in range(self.max_attempts):
            answer = self.ask(message, default)
            if answer and validator(answer):
                return answer
            self.say(f"[WARN] {error}")
        raise PromptAbort(f"No valid answer for '{message}' after {self.max_attempts} attempts")

    def confirm(self, message: str, default: bool = False) -> bool:
        hint = "Y/n" if default else "y/N"
        for _ in range(self.max_attempts):
            answer = self._input(f"{message} ({hint}): ").strip().lower()
            if not answer:
                return default
            if answer in ("y", "yes"):
                return True
            if answer in ("n", "no"):
                return False
            self.say("[WARN] Please answer y or n")
        raise PromptAbort(f"No yes/no answer for '{message}'")

    def choose(self, title: str, options: Sequence[str], allow_back: bool = False) -> int | None:
        """Numbered menu.

        Returns the 0-based index of the chosen option, or ``None`` when
        *allow_back* is set and the operator picked "Back".
        """
        entries = list(options)
        if allow_back:
            entries.append("Back")
        if not options:
            raise PromptAbort(f"Nothing to choose for '{title}'")

        self.say(f"\n{title}")
        for number, entry in enumerate(entries, start=1):
            self.say(f"  {number}. {entry}")

        for _ in range(self.max_attempts):
            selection = parse_selection(self._input(f"Select 1-{len(entries)}: "), len(entries))
            if selection is None:
                self.say(f"[WARN] Enter a number between 1 and {len(entries)}")
                continue
            if allow_back and selection == len(entries):
                return None
            return selection - 1
        raise PromptAbort(f"No valid selection for '{title}' after {self.max_attempts} attempts")

    def secret_twice(self, message: str) -> str:
        """Masked input entered twice; both entries must match and be non-empty."""
        for _ in range(self.max_attempts):
            first = self._secret(f"{message}: ")
            second = self._secret(f"Confirm {message.lower()}: ")
            if first and first == second:
                return first
            self.say("[WARN] Entries were empty or did not match")
        raise PromptAbort(f"No matching entries for '{message}'")
