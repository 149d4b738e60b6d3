from __future__ import annotations

import re
from dataclasses import dataclass, field


BUFFER_MAX = 4096
SCAN_WINDOW = 1500
STALE_THRESHOLD = 500

PROMPT_KIND_YES_NO = "yn"
PROMPT_KIND_NUMBERED = "numbered"

ANSI_ESCAPE_RE = re.compile(r"\x1B(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1B]*(?:\x07|\x1B\\)|[@-Z\\-_])")
_MARKER = r"[?>❯]"
_YES_NO_RE = re.compile(
    r"(?:^|\n)\s*" + _MARKER + r"[ \t]+([^\n]+?)\s*\(([yYnN])/([yYnN])\)\s*\Z"
)
_NUMBERED_RE = re.compile(
    r"(?:^|\n)\s*" + _MARKER + r"[ \t]+([^\n]+?)[ \t\r:]*\n"
    r"([ \t]+\d+[.)][ \t]+[^\n]+(?:\n[ \t]+\d+[.)][ \t]+[^\n]+)+)\n?\s*\Z"
)
_OPTION_LINE_RE = re.compile(r"[ \t]+(\d+)[.)][ \t]+([^\n]+)")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


@dataclass(frozen=True)
class PromptOption:
    number: str
    text: str


@dataclass(frozen=True)
class PromptState:
    question: str
    kind: str
    options: tuple[PromptOption, ...] = ()
    detected_at: int = field(default=0, compare=False)

    def accepts_keystroke(self, char: str) -> bool:
        """Whether a single typed character is a complete answer to this prompt."""
        if self.kind == PROMPT_KIND_YES_NO:
            return char in "yYnN"
        if self.kind == PROMPT_KIND_NUMBERED:
            return len(char) == 1 and char.isdigit()
        return False

    def resolve_answer(self, text: str) -> str | None:
        if self.kind == PROMPT_KIND_YES_NO:
            return "Yes" if "y" in text.lower() else "No"
        for option in self.options:
            if option.number == text:
                return option.text
        return None


class PromptDetector:
    """Tail-anchored scanner for pending interactive prompts in agent output."""

    def __init__(self) -> None:
        self._buffer = ""
        self._fed = 0
        self._prompt: PromptState | None = None

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> PromptState | None:
        clean = strip_ansi(chunk)
        self._buffer += clean
        self._fed += len(clean)
        if len(self._buffer) > BUFFER_MAX:
            self._buffer = self._buffer[-BUFFER_MAX:]

        if self._prompt is not None and self._fed - self._prompt.detected_at > STALE_THRESHOLD:
            self._prompt = None

        if self._prompt is None:
            self._prompt = self._scan()
        return self._prompt

    def get_active_prompt(self) -> PromptState | None:
        return self._prompt

    def clear_prompt(self) -> None:
        self._prompt = None

    def _scan(self) -> PromptState | None:
        tail = self._buffer[-SCAN_WINDOW:]

        match = _YES_NO_RE.search(tail)
        if match:
            return PromptState(
                question=match.group(1).strip(),
                kind=PROMPT_KIND_YES_NO,
                detected_at=self._fed,
            )

        match = _NUMBERED_RE.search(tail)
        if match:
            options = tuple(
                PromptOption(number=number, text=text.strip())
                for number, text in _OPTION_LINE_RE.findall(match.group(2))
            )
            if len(options) >= 2:
                return PromptState(
                    question=match.group(1).strip(),
                    kind=PROMPT_KIND_NUMBERED,
                    options=options,
                    detected_at=self._fed,
                )
        return None
