"""
Stream assembly.

Turns incremental text fragments into a progressively growing display
string and at most one mood label carried by a ``[MOOD: X]`` control
tag. Partial tag syntax is never displayed.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Optional

from .errors import EmptyResponse

MOOD_TAG_PATTERN = re.compile(r"\[MOOD:\s*([a-zA-Z]+)\]")
TAG_OPENER = "["


class Mood(Enum):
    """Moods a character can signal."""
    HAPPY = "Happy"
    FLIRTY = "Flirty"
    ANNOYED = "Annoyed"
    SAD = "Sad"
    EXCITED = "Excited"
    SHY = "Shy"
    NEUTRAL = "Neutral"
    ROMANTIC = "Romantic"
    COLD = "Cold"

    @classmethod
    def parse(cls, value: str) -> Optional["Mood"]:
        """Return the matching mood, or None for unknown labels."""
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class DisplayUpdate:
    """Full display value after a fragment, plus the mood if known."""
    text: str
    mood: Optional[Mood] = None
    is_first: bool = False


def fragment_text(chunk: Any) -> str:
    """Extract text from a stream chunk (plain string or object with .text)."""
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    return getattr(chunk, "text", None) or ""


class StreamAssembler:
    """Incremental parser for one streamed reply."""

    def __init__(self):
        self.raw_accumulated = ""
        self.displayed_so_far = ""
        self.mood_extracted = False
        self._tag: Optional[str] = None
        self._mood: Optional[Mood] = None

    @property
    def mood(self) -> Optional[Mood]:
        """Extracted mood, if the tag carried a valid one."""
        return self._mood

    def feed(self, fragment: str) -> Optional[DisplayUpdate]:
        """Consume one fragment.

        Returns:
            DisplayUpdate when the visible text changed, otherwise None
        """
        if not fragment:
            return None
        self.raw_accumulated += fragment

        if not self.mood_extracted:
            match = MOOD_TAG_PATTERN.search(self.raw_accumulated)
            if match:
                self._tag = match.group(0)
                self._mood = Mood.parse(match.group(1))
                self.mood_extracted = True
            elif self.raw_accumulated.strip().startswith(TAG_OPENER):
                # Tag may still be arriving
                return None

        display = self.raw_accumulated
        if self._tag is not None:
            display = display.replace(self._tag, "", 1)
        display = display.lstrip()

        if not display or display == self.displayed_so_far:
            return None

        is_first = not self.displayed_so_far
        self.displayed_so_far = display
        return DisplayUpdate(text=display, mood=self._mood, is_first=is_first)

    def finish(self) -> str:
        """Close the stream and return the final display text.

        Raises:
            EmptyResponse: Nothing displayable arrived (empty generation,
                safety filter, or an unterminated tag)
        """
        if not self.displayed_so_far:
            raise EmptyResponse()
        return self.displayed_so_far


async def assemble(fragments: AsyncIterable[Any],
                   assembler: Optional[StreamAssembler] = None) -> AsyncIterator[DisplayUpdate]:
    """Lazily map a fragment stream to display updates.

    Raises EmptyResponse at the end of the stream if nothing was shown.
    """
    assembler = assembler or StreamAssembler()
    async for chunk in fragments:
        update = assembler.feed(fragment_text(chunk))
        if update is not None:
            yield update
    assembler.finish()
