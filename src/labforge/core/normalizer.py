"""
Output normalizer.

Different models interpret the lab templates slightly differently, which shows
up as formatting drift in the generated markdown. normalize() repairs the known
defects so the previewer always receives the same block structure, whichever
provider produced the text.

Every pass is a pure str -> str function and is safe to apply repeatedly.
"""
from __future__ import annotations
import re
from typing import Callable, Dict, List, Optional, Tuple, Union

GUIDED_OPEN = ":::ShowGuided"
ADVANCED_OPEN = ":::ShowAdvanced"
BLOCK_CLOSE = ":::"
BLANK_QUOTE = ">"

_BULLET_RE = re.compile(r"^>\s*-")
_TAG_RE = re.compile(r"^>\s*\[")
_CALLOUT_RE = re.compile(r"^>?\s*\[(?:\+alert|!note|!help)\]", re.IGNORECASE)
_OVERVIEW_RE = re.compile(r"^>\[overview\]:(.*)$")
_WS_RE = re.compile(r"\s+")

Pass = Callable[[str], str]


def _is_blank_quote(line: str) -> bool:
    return line == BLANK_QUOTE


def _is_bullet(line: str) -> bool:
    return bool(_BULLET_RE.match(line))


def _is_tag(line: str) -> bool:
    return bool(_TAG_RE.match(line))


def _is_callout(line: str) -> bool:
    return bool(_CALLOUT_RE.match(line))


def _find_blocks(lines: List[str], opener: str) -> List[Tuple[int, int]]:
    """(start, end) line indexes of each terminated block; end is the closing ':::' line."""
    blocks: List[Tuple[int, int]] = []
    i = 0
    while i < len(lines):
        if lines[i].startswith(opener):
            j = i + 1
            while j < len(lines) and lines[j] != BLOCK_CLOSE and not lines[j].startswith(":::Show"):
                j += 1
            if j < len(lines) and lines[j] == BLOCK_CLOSE:
                blocks.append((i, j))
                i = j + 1
                continue
            i = j
            continue
        i += 1
    return blocks


# ---------------------------------------------------------------- base passes

def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def strip_trailing_whitespace(text: str) -> str:
    return "\n".join(line.rstrip() for line in text.split("\n"))


def fix_double_blockquote_bullets(text: str) -> str:
    # "> >- step" -> "> - step"
    return text.replace("> >-", "> -")


def _space_guided_body(body: List[str]) -> List[str]:
    out: List[str] = []
    in_step = False
    for line in body:
        if _is_bullet(line) or _is_tag(line):
            # collapse any run of blank quote lines before it to exactly one
            run = 0
            while out and _is_blank_quote(out[-1]):
                out.pop()
                run += 1
            if run or in_step:
                out.append(BLANK_QUOTE)
            out.append(line)
            in_step = True
            continue
        if _is_blank_quote(line) or not line.startswith(">"):
            in_step = False
        out.append(line)
    return out


def fix_guided_hint_spacing(text: str) -> str:
    """
    Inside guided hint blocks: exactly one blank '>' line before every step
    bullet or tag line that follows a step, and never more than one before any.
    """
    lines = text.split("\n")
    for start, end in reversed(_find_blocks(lines, GUIDED_OPEN)):
        lines[start + 1:end] = _space_guided_body(lines[start + 1:end])
    return "\n".join(lines)


def _take_callouts(body: List[str]) -> Tuple[List[str], List[List[str]]]:
    kept: List[str] = []
    callouts: List[List[str]] = []
    i = 0
    while i < len(body):
        line = body[i]
        if _is_callout(line):
            block = [line]
            i += 1
            while i < len(body):
                nxt = body[i]
                if (not nxt.startswith(">") or _is_blank_quote(nxt)
                        or _is_bullet(nxt) or _is_tag(nxt)):
                    break
                block.append(nxt)
                i += 1
            if kept and _is_blank_quote(kept[-1]):
                kept.pop()
            callouts.append(block)
            continue
        kept.append(line)
        i += 1
    return kept, callouts


def relocate_guided_callouts(text: str) -> str:
    """
    Callouts (alert/note/help) must not live inside a guided hint block.
    Move them below the next advanced hint block, keeping their order.
    A guided block with no advanced block after it is left as is.
    """
    lines = text.split("\n")
    guided = _find_blocks(lines, GUIDED_OPEN)
    advanced = _find_blocks(lines, ADVANCED_OPEN)
    if not guided or not advanced:
        return text

    # closing line index of advanced block -> callouts to emit after it
    pending: Dict[int, List[List[str]]] = {}
    replaced: Dict[int, Tuple[int, List[str]]] = {}
    for start, end in guided:
        target = next((a_end for a_start, a_end in advanced if a_start > end), None)
        if target is None:
            continue
        kept, callouts = _take_callouts(lines[start + 1:end])
        if not callouts:
            continue
        replaced[start] = (end, kept)
        pending.setdefault(target, []).extend(callouts)

    if not replaced:
        return text

    out: List[str] = []
    i = 0
    while i < len(lines):
        if i in replaced:
            end, kept = replaced[i]
            out.append(lines[i])
            out.extend(kept)
            i = end
            continue
        out.append(lines[i])
        for callout in pending.get(i, []):
            out.append(BLANK_QUOTE)
            out.extend(callout)
        i += 1
    return "\n".join(out)


def cap_blank_lines_around_callouts(text: str) -> str:
    """At most one empty line directly before and after a callout tag line."""
    out: List[str] = []
    after_callout = False
    empties = 0
    for line in text.split("\n"):
        if line == "":
            empties += 1
            continue
        keep = min(empties, 1) if (after_callout or _is_callout(line)) else empties
        out.extend([""] * keep)
        empties = 0
        out.append(line)
        after_callout = _is_callout(line)
    out.extend([""] * (min(empties, 1) if after_callout else empties))
    return "\n".join(out)


# ------------------------------------------------------- provider post-passes

def join_overview_lines(text: str) -> str:
    """Collapse an '>[overview]:' value that was wrapped across lines into one line."""
    lines = text.split("\n")
    for idx, line in enumerate(lines):
        m = _OVERVIEW_RE.match(line)
        if not m:
            continue
        pieces = [m.group(1)]
        j = idx + 1
        while j < len(lines):
            nxt = lines[j]
            if nxt == "" or _is_blank_quote(nxt) or _is_tag(nxt) or nxt.startswith(":::"):
                break
            pieces.append(nxt[1:] if nxt.startswith(">") else nxt)
            j += 1
        value = _WS_RE.sub(" ", " ".join(pieces)).strip()
        lines[idx:j] = [f">[overview]: {value}" if value else ">[overview]:"]
        break
    return "\n".join(lines)


BASE_PASSES: Tuple[Pass, ...] = (
    normalize_line_endings,
    strip_trailing_whitespace,
    fix_double_blockquote_bullets,
    fix_guided_hint_spacing,
    relocate_guided_callouts,
    cap_blank_lines_around_callouts,
)

PROVIDER_PASSES: Dict[str, Tuple[Pass, ...]] = {
    "gemini": (join_overview_lines, fix_guided_hint_spacing),
    "openai": (),
    "ollama": (),
}


def normalize(text: Optional[str], provider: Union[str, None] = None) -> str:
    """
    Run the shared passes, then the provider's own post-passes.
    Unknown providers only get the shared passes. Never raises.
    """
    if not text:
        return ""
    out = str(text)
    key = getattr(provider, "value", provider)
    for fn in BASE_PASSES + PROVIDER_PASSES.get(str(key).lower() if key else "", ()):
        out = fn(out)
    return out
