"""
Console output and confirmation prompts.
"""

import logging
from typing import Callable, Iterable, Optional, Sequence

from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)

YES_ANSWERS = ("y", "yes")
NO_ANSWERS = ("n", "no")


class Reporter:
    """Colored user-facing messages and tables.

    Regular output goes to stdout, errors and warnings to stderr. Messages
    are printed without rich markup so resource names containing brackets
    are shown verbatim.
    """

    def __init__(self, use_color: bool = True, out: Console = None, err: Console = None):
        self.use_color = use_color
        self.out = out or Console(no_color=not use_color, highlight=False)
        self.err = err or Console(stderr=True, no_color=not use_color, highlight=False)

    def _print(self, console: Console, message: str, style: Optional[str]) -> None:
        console.print(message, style=style, markup=False, highlight=False, soft_wrap=True)

    def error(self, message: str) -> None:
        self._print(self.err, f"Error: {message}", "bold red")

    def warning(self, message: str) -> None:
        self._print(self.err, f"Warning: {message}", "yellow")

    def success(self, message: str) -> None:
        self._print(self.out, message, "green")

    def info(self, message: str) -> None:
        self._print(self.out, message, "blue")

    def plain(self, message: str = "") -> None:
        self._print(self.out, message, None)

    def header(self, title: str) -> None:
        self._print(self.out, f"\n=== {title} ===", "bold")

    def table(
        self,
        title: Optional[str],
        columns: Sequence[str],
        rows: Iterable[Sequence[object]],
    ) -> None:
        table = Table(title=title, show_header=True, header_style="bold")
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*["" if value is None else str(value) for value in row])
        self.out.print(table)


def decide_confirmation(answer: Optional[str], default: bool = False) -> Optional[bool]:
    """Interpret an answer to a yes/no prompt.

    Args:
        answer: Text entered by the user, None at end of input
        default: Result for an empty answer

    Returns:
        True or False, or None if the answer should be asked again
    """
    if answer is None:
        return False
    answer = answer.strip().lower()
    if not answer:
        return default
    if answer in YES_ANSWERS:
        return True
    if answer in NO_ANSWERS:
        return False
    return None


def needs_prompt(auto_confirm: bool = False, assume_yes: bool = False) -> bool:
    return not (auto_confirm or assume_yes)


def confirm(
    message: str,
    default: bool = False,
    auto_confirm: bool = False,
    assume_yes: bool = False,
    input_func: Optional[Callable[[str], str]] = None,
) -> bool:
    """Ask a yes/no question unless confirmation is automatic.

    Args:
        message: Question to ask
        default: Answer used when the user just presses enter
        auto_confirm: AUTO_CONFIRM setting
        assume_yes: -y/--yes flag
        input_func: Reads one line of input, defaults to input()

    Returns:
        True if confirmed
    """
    if not needs_prompt(auto_confirm, assume_yes):
        logger.debug(f"Auto-confirmed: {message}")
        return True

    input_func = input_func or input
    suffix = "[Y/n]" if default else "[y/N]"
    while True:
        try:
            answer = input_func(f"{message} {suffix}: ")
        except EOFError:
            answer = None
        decision = decide_confirmation(answer, default)
        if decision is not None:
            return decision
        print("Please answer yes or no.")
