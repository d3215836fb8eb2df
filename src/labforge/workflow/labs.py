"""Helpers for the multi-document lab format produced by the first agent."""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

FILE_START = "--- START OF FILE:"
FILE_END_RE = re.compile(r"--- END OF FILE ---\s*$")
SERIES_SPLIT = "\n===SPLIT===\n"
SERIES_NAME_PREFIX = "**Series Name:**"

_TITLE_RE = re.compile(r"^>\[challenge-title\]:\s*(.*)", re.MULTILINE)
_UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*]')


@dataclass(frozen=True)
class ParsedLab:
    title: str
    content: str


def parse_labs(raw: str) -> List[ParsedLab]:
    """Split '--- START OF FILE: <title> ---' documents. Text without that marker holds no labs."""
    if not raw or FILE_START not in raw:
        return []
    labs: List[ParsedLab] = []
    for doc in raw.split(FILE_START):
        if not doc.strip():
            continue
        lines = doc.split("\n")
        title = lines[0].replace("---", "").strip()
        content = FILE_END_RE.sub("", "\n".join(lines[1:])).strip()
        labs.append(ParsedLab(title=title, content=content))
    return labs


def split_series_output(text: str) -> Optional[Tuple[str, str]]:
    """(series overview, lab documents) or None when the split marker is not there exactly once."""
    parts = text.split(SERIES_SPLIT)
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


def series_file_name(series: str) -> str:
    for line in series.split("\n"):
        if line.startswith(SERIES_NAME_PREFIX):
            name = line[len(SERIES_NAME_PREFIX):].strip()
            safe = re.sub(r"[^a-z0-9\s-]", "", name, flags=re.IGNORECASE)
            safe = re.sub(r"\s+", "-", safe).lower()
            return f"lab-series-{safe}.md"
    return "lab-series.md"


def challenge_title(content: str) -> Optional[str]:
    m = _TITLE_RE.search(content)
    return m.group(1).strip() if m else None


def safe_filename(title: str, suffix: str = ".md") -> str:
    return f"{_UNSAFE_FILENAME_RE.sub('_', title)}{suffix}"


def join_labs(labs: List[ParsedLab]) -> str:
    """Inverse of parse_labs."""
    return "\n".join(f"{FILE_START} {lab.title} ---\n{lab.content}\n--- END OF FILE ---" for lab in labs)
