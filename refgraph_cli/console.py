"""Rich console implementation of operator interaction."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence, TextIO

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.rule import Rule

from .plugins import UserInteraction

logger = logging.getLogger(__name__)

INDENT = "  "


class _ConsoleSink:
    """Line-oriented text stream echoing build output to the console."""

    def __init__(self, console: Console, prefix: str):
        self.console = console
        self.prefix = prefix
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        while "\n" in self._pending:
            line, self._pending = self._pending.split("\n", 1)
            self.console.print(f"{self.prefix}[dim]{escape(line)}[/dim]", highlight=False)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self.console.print(f"{self.prefix}[dim]{escape(self._pending)}[/dim]", highlight=False)
            self._pending = ""


class RichUserInteraction(UserInteraction):
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._depth = 0

    @property
    def _prefix(self) -> str:
        return INDENT * self._depth

    def inform(self, message: str) -> None:
        for line in message.splitlines() or [""]:
            self.console.print(f"{self._prefix}{escape(line)}", highlight=False)

    def ask(self, prompt: str, default: Optional[str] = None) -> str:
        return Prompt.ask(f"{self._prefix}[bold]{escape(prompt)}[/bold]", default=default, console=self.console)

    def choose(self, prompt: str, choices: Sequence[str], default: Optional[str] = None) -> str:
        answer = Prompt.ask(
            f"{self._prefix}[bold]{escape(prompt)}[/bold]",
            choices=list(choices),
            default=default,
            console=self.console,
            case_sensitive=False,
        )
        for choice in choices:
            if choice.lower() == answer.lower():
                return choice
        return answer

    @contextmanager
    def indent(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1

    @contextmanager
    def bracket(self, title: str) -> Iterator[None]:
        self.console.print(f"{self._prefix}[cyan]{escape(title)}[/cyan]", highlight=False)
        with self.indent():
            yield

    @contextmanager
    def log_sink(self, title: str) -> Iterator[TextIO]:
        self.console.print(Rule(f"[bold blue]{escape(title)}[/bold blue]"))
        sink = _ConsoleSink(self.console, self._prefix + INDENT)
        try:
            yield sink  # type: ignore[misc]
        finally:
            sink.flush()
            self.console.print(Rule())
