"""
Interactive and automatic choosers.

One paginated prompt loop serves both the image list and the drive list:

    show page -> read answer -> reshow | next page | selected | quit

Empty input or ``?`` redisplays (and, for drives, rescans), ``m`` moves to
the next page of 40 entries, ``0`` quits, and a number in range selects.
Anything else is reported and the prompt repeats on the same page.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from crosrec.catalog import Catalog, ImageStanza
from crosrec.core.messages import UserQuit
from crosrec.core.parsing import AnswerKind, parse_choice
from crosrec.devices import Device
from crosrec.state import StateStore

logger = logging.getLogger(__name__)

PAGE_SIZE = 40

Ask = Callable[[str], str]
Say = Callable[[str], None]


@dataclass(frozen=True)
class PageWindow:
    """Half-open window ``[start, stop)`` over ``total`` entries."""
    start: int
    stop: int
    total: int

    @classmethod
    def first(cls, total: int) -> "PageWindow":
        return cls(0, min(PAGE_SIZE, total), total)

    def advance(self) -> "PageWindow":
        """Next page; after the last page, back to the first."""
        if self.stop >= self.total:
            return PageWindow.first(self.total)
        if self.stop + PAGE_SIZE > self.total:
            return PageWindow(self.start + PAGE_SIZE, self.total, self.total)
        return PageWindow(self.start + PAGE_SIZE, self.stop + PAGE_SIZE, self.total)

    def indices(self) -> range:
        return range(self.start, self.stop)


class Outcome(Enum):
    RESHOW = "reshow"
    ADVANCE = "advance"
    NOT_UNDERSTOOD = "not_understood"
    OUT_OF_RANGE = "out_of_range"
    CANCELLED = "cancelled"
    SELECTED = "selected"


def interpret(raw: Optional[str], count: int) -> Tuple[Outcome, int]:
    """Map one prompt answer to the chooser's next transition."""
    answer = parse_choice(raw)
    if answer.kind is AnswerKind.RESHOW:
        return Outcome.RESHOW, 0
    if answer.kind is AnswerKind.MORE:
        return Outcome.ADVANCE, 0
    if answer.kind is AnswerKind.UNKNOWN:
        return Outcome.NOT_UNDERSTOOD, 0
    if answer.number == 0:
        return Outcome.CANCELLED, 0
    if answer.number > count:
        return Outcome.OUT_OF_RANGE, answer.number
    return Outcome.SELECTED, answer.number


def run_chooser(
    load: Callable[[], Sequence],
    render: Callable[[Sequence, PageWindow], None],
    prompt_text: Callable[[PageWindow], str],
    ask: Ask,
    say: Say,
) -> int:
    """
    Drive the prompt loop until the user picks an entry.

    Args:
        load: Returns the current entries; called again on every redisplay
        render: Shows the given page of entries
        prompt_text: Builds the prompt for the current page
        ask: Reads one line of input
        say: Writes one message

    Returns:
        The chosen 1-based index.

    Raises:
        UserQuit: If the user answers 0
    """
    entries = load()
    window = PageWindow.first(len(entries))
    show = True

    while True:
        if show:
            render(entries, window)
            show = False

        outcome, number = interpret(ask(prompt_text(window)), len(entries))
        logger.debug("chooser outcome=%s number=%d window=%s", outcome.value, number, window)

        if outcome is Outcome.RESHOW:
            entries = load()
            if len(entries) != window.total:
                window = PageWindow.first(len(entries))
            show = True
        elif outcome is Outcome.ADVANCE:
            window = window.advance()
            show = True
        elif outcome is Outcome.NOT_UNDERSTOOD:
            say("Sorry, I didn't understand that.")
        elif outcome is Outcome.OUT_OF_RANGE:
            say("That's not one of the choices.")
        elif outcome is Outcome.CANCELLED:
            raise UserQuit()
        else:
            return number


def _image_prompt(window: PageWindow) -> str:
    nxt = window.advance()
    return (
        "Select the number of the recovery image to download (this will be saved "
        f"for next time), or press M to see options {nxt.start + 1} to {nxt.stop}: "
    )


def choose_image(catalog: Catalog, store: StateStore, ask: Ask, say: Say) -> int:
    """
    Let the user pick an image, offering last run's choice first.

    The chosen index is saved for the next run before it is returned.
    """
    state = store.load_selection()
    saved = state.saved_index
    if state.has_run and saved is not None:
        reply = ask(f"Use image {saved} (saved from last time)? 'y' (yes) or 'n' (no): ")
        if reply.strip() == "y":
            if 1 <= saved <= catalog.count:
                return saved
            say(f"Image {saved} is no longer in the catalog.")

    records = catalog.records

    def render(entries: Sequence[ImageStanza], window: PageWindow) -> None:
        if len(entries) == 1:
            say("There is 1 recovery image to choose from:")
        else:
            say(f"There are {len(entries)} recovery images to choose from:")
        say("")
        say("0 - <quit>")
        for i in window.indices():
            say(f"{i + 1} - {entries[i].name}")
        say("")

    index = run_chooser(lambda: records, render, _image_prompt, ask, say)
    store.save_selection(index)
    return index


def find_model(records: Sequence[ImageStanza], model: str) -> Optional[int]:
    """Index of the first record whose name contains ``model`` (case-sensitive)."""
    for record in records:
        if model in record.name:
            return record.index
    return None


def match_model(catalog: Catalog, model: str, say: Say) -> int:
    """
    Select an image non-interactively from the hardware model string.

    Raises:
        UserQuit: If no image matches
    """
    index = find_model(catalog.records, model)
    if index is None:
        say(f"Sorry, there's no recovery image for Chrome Notebook: {model}.")
        raise UserQuit()
    say(f"Selecting image for model {model}")
    return index


def choose_drive(
    enumerate_devices: Callable[[], List[Device]],
    required_mb: int,
    ask: Ask,
    say: Say,
) -> Device:
    """
    Let the user pick a destination drive.

    Pressing Enter rescans. The capacity figure is a hint only; an undersized
    drive can still be chosen.
    """
    current: List[Device] = []

    def load() -> List[Device]:
        current[:] = enumerate_devices()
        return current

    def render(entries: Sequence[Device], window: PageWindow) -> None:
        if not entries:
            msg = "I can't seem to find a valid USB drive."
        elif len(entries) == 1:
            msg = "I found 1 USB drive."
        else:
            msg = f"I found {len(entries)} USB drives."
        say("")
        say(f"{msg}  We need one with at least {required_mb}MB capacity.")
        say("")
        say("0 - <quit>")
        for i in window.indices():
            say("")
            say(f"{i + 1} - Use {entries[i].description}")
        say("")

    def prompt_text(window: PageWindow) -> str:
        return "Tell me what to do (or just press Enter to scan again): "

    index = run_chooser(load, render, prompt_text, ask, say)
    return current[index - 1]
