from __future__ import annotations

import csv
import io
from pathlib import Path

from huayu.client.conversation import VocabEntry

_HEADER_TERMS = {"term", "hanzi", "word", "chinese"}


def parse_vocabulary(text: str) -> list[VocabEntry]:
    """Read ``term,romanization`` rows (comma or tab separated).

    Blank rows and ``#`` comments are skipped and so is a leading header row.
    Order and duplicates are preserved.
    """
    entries: list[VocabEntry] = []
    for raw_line in io.StringIO(text or ""):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        delimiter = "\t" if "\t" in line else ","
        row = next(csv.reader([line], delimiter=delimiter), [])
        term = str(row[0] if row else "").strip()
        romanization = str(row[1] if len(row) > 1 else "").strip()
        if not entries and term.lower() in _HEADER_TERMS:
            continue
        if term or romanization:
            entries.append(VocabEntry(term=term, romanization=romanization))
    return entries


def load_vocabulary(path: Path) -> list[VocabEntry]:
    return parse_vocabulary(Path(path).read_text(encoding="utf-8-sig"))
