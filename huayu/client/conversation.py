from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

VOCAB_PROMPT_CAP = 80

GREETING_PROMPT = "Greet me briefly and ask a very simple question that uses the uploaded vocabulary."
PRACTICE_PROMPT = (
    "Please start a short 3-round practice using BEGINNER vocabulary. "
    "Ask ONE short question now using the focus words. Wait for my answer."
)

_STRICT = (
    "STRICT MODE: Use ONLY the listed vocabulary and their obvious forms "
    "(particles like 吗/呢/的 allowed). No new words."
)
_PREFER = (
    "PREFER LISTED VOCAB: Strongly prefer the listed vocabulary; any new word must be "
    "extremely common and simple."
)
_GUIDED = (
    "GUIDED MODE: Prefer the listed vocabulary; introduce at most ONE new very simple A1 word "
    "per reply."
)
_LOOSE = (
    "LOOSE MODE: Use listed vocabulary when possible; you may introduce up to TWO new simple "
    "words if it improves naturalness."
)

_TAGS = {
    "primary": re.compile(r"^Hanzi\s*:\s*", re.IGNORECASE),
    "romanized": re.compile(r"^Pinyin\s*:\s*", re.IGNORECASE),
    "gloss": re.compile(r"^English\s*:\s*", re.IGNORECASE),
}


@dataclass(frozen=True, slots=True)
class VocabEntry:
    term: str
    romanization: str = ""


@dataclass(frozen=True, slots=True)
class ParsedReply:
    primary_text: str = ""
    romanized_text: str = ""
    gloss_text: str = ""

    @property
    def romanized_tokens(self) -> list[str]:
        return self.romanized_text.split()


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    timestamp: float
    prompt_text: str
    raw_reply_text: str
    parsed_reply: ParsedReply
    user_reply_text: str
    used_vocab_entries: tuple[VocabEntry, ...] = ()


@dataclass
class ConversationState:
    """Everything one tutoring conversation knows; owned by the session object."""

    vocabulary: list[VocabEntry] = field(default_factory=list)
    history: list[ConversationTurn] = field(default_factory=list)
    messages: list[dict[str, str]] = field(default_factory=list)
    last_reply: ParsedReply | None = None
    last_used_vocab: tuple[VocabEntry, ...] = ()
    user_reply: str = ""
    speaking: bool = False
    romanized_tokens: list[str] = field(default_factory=list)
    highlight_index: int = -1

    def clear_history(self) -> None:
        self.history.clear()
        self.messages.clear()
        self.last_reply = None
        self.last_used_vocab = ()
        self.user_reply = ""
        self.romanized_tokens = []
        self.highlight_index = -1


def difficulty_policy(difficulty: float) -> str:
    d = max(0.0, min(100.0, float(difficulty)))
    if d <= 10:
        return _STRICT
    if d <= 35:
        return _PREFER
    if d <= 70:
        return _GUIDED
    return _LOOSE


def difficulty_label(difficulty: float) -> str:
    d = max(0.0, min(100.0, float(difficulty)))
    if d <= 10:
        return "Strict"
    if d <= 35:
        return "Tight"
    if d <= 70:
        return "Balanced"
    return "Loose"


def format_vocabulary(entries: Iterable[VocabEntry], cap: int = VOCAB_PROMPT_CAP) -> str:
    parts: list[str] = []
    for idx, entry in enumerate(entries):
        if idx >= cap:
            break
        term = str(entry.term or "").strip()
        roman = str(entry.romanization or "").strip()
        text = f"{term}({roman})" if term and roman else (term or roman)
        if text:
            parts.append(text)
    return ", ".join(parts)


def topic_line(topic: str | None) -> str:
    normalized = str(topic or "").strip()
    if normalized and normalized.lower() != "auto":
        return f"Topic: {normalized}. Focus your questions on this topic."
    return "Topic: general daily conversation."


def build_system_prompt(
    *,
    difficulty: float,
    topic: str | None,
    show_gloss: bool,
    vocabulary: Sequence[VocabEntry],
    practice_focus: Sequence[VocabEntry] | None = None,
) -> str:
    vocab_line = f"Vocabulary list: {format_vocabulary(vocabulary)}." if vocabulary else ""
    practice_hint = (
        f"Practice focus (use these words heavily): {format_vocabulary(practice_focus)}."
        if practice_focus
        else ""
    )
    if show_gloss:
        head = ["Reply in EXACTLY 3 lines:", "Hanzi: ...", "Pinyin: ...", "English: ..."]
    else:
        head = ["Reply in EXACTLY 2 lines:", "Hanzi: ...", "Pinyin: ...", "NO English."]
    return "\n".join(
        [
            *head,
            difficulty_policy(difficulty),
            topic_line(topic),
            "Keep sentences short and beginner-friendly.",
            vocab_line,
            practice_hint,
        ]
    )


def _is_tagged(line: str) -> bool:
    return any(pattern.match(line) for pattern in _TAGS.values())


def parse_reply(raw: Any, show_gloss: bool) -> ParsedReply:
    """Split a tutor reply into Hanzi / Pinyin / English.

    Tagged lines win; untagged lines 1-3 fill whatever is still missing
    (line 3 only when the gloss is shown).
    """
    text = "" if raw is None else str(raw)
    lines = [line.strip() for line in text.split("\n")]
    found = {"primary": "", "romanized": "", "gloss": ""}
    for line in lines:
        for key, pattern in _TAGS.items():
            if pattern.match(line):
                found[key] = pattern.sub("", line, count=1).strip()
                break

    def _positional(idx: int) -> str:
        if idx < len(lines) and lines[idx] and not _is_tagged(lines[idx]):
            return lines[idx]
        return ""

    primary = found["primary"] or _positional(0)
    romanized = found["romanized"] or _positional(1)
    gloss = found["gloss"]
    if show_gloss and not gloss:
        gloss = _positional(2)
    return ParsedReply(primary_text=primary, romanized_text=romanized, gloss_text=gloss)


def used_vocabulary(entries: Iterable[VocabEntry], primary_text: str) -> list[VocabEntry]:
    if not primary_text:
        return []
    used: list[VocabEntry] = []
    for entry in entries:
        term = str(entry.term or "").strip()
        if term and term in primary_text:
            used.append(entry)
    return used
