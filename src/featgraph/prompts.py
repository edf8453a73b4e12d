"""
Prompting

The workflow engine asks a Prompter whenever a decision needs a human
(for example "reuse the existing feature or create a new one?"). It only
depends on the answer, so the CLI plugs in a rich console prompter while
tests and ``--yes`` runs use scripted or default answers.
"""

from typing import Iterable, List, Optional

from rich.console import Console
from rich.prompt import Confirm, Prompt


class Prompter:
    """Non-interactive prompter: always takes the default answer."""

    interactive = False

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return default

    def choose(self, prompt: str, choices: List[str], default: Optional[str] = None) -> str:
        return default if default is not None else choices[0]


class ScriptedPrompter(Prompter):
    """Replays queued answers in order, then falls back to defaults."""

    def __init__(self, answers: Iterable[object] = ()):
        self.answers = list(answers)
        self.asked: List[str] = []

    def _next(self):
        return self.answers.pop(0) if self.answers else None

    def confirm(self, prompt: str, default: bool = False) -> bool:
        self.asked.append(prompt)
        answer = self._next()
        return default if answer is None else bool(answer)

    def choose(self, prompt: str, choices: List[str], default: Optional[str] = None) -> str:
        self.asked.append(prompt)
        answer = self._next()
        if answer is None:
            return super().choose(prompt, choices, default)
        if isinstance(answer, int):
            return choices[answer]
        return str(answer)


class ConsolePrompter(Prompter):
    """Interactive prompts on a rich console."""

    interactive = True

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return Confirm.ask(prompt, default=default, console=self.console)

    def choose(self, prompt: str, choices: List[str], default: Optional[str] = None) -> str:
        self.console.print(f"\n{prompt}")
        for i, choice in enumerate(choices, 1):
            marker = "[bold green]→[/bold green]" if choice == default else " "
            self.console.print(f"  {marker} [{i}] {choice}")

        while True:
            selection = Prompt.ask(
                "Enter number",
                default=str(choices.index(default) + 1) if default in choices else None,
                console=self.console,
            )
            try:
                idx = int(selection) - 1
                if 0 <= idx < len(choices):
                    return choices[idx]
            except (TypeError, ValueError):
                pass
            for choice in choices:
                if selection and choice.lower() == selection.lower():
                    return choice
            self.console.print(f"[red]✗[/red] Invalid selection. Choose 1-{len(choices)}")
