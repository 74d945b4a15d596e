from __future__ import annotations

import re

# An info string is only a language tag when a newline follows it; inline
# fences keep their first word, except a bare ``json`` tag before the payload.
FENCED_BLOCK_RE = re.compile(r"```(?:[\w+-]*[ \t]*\n|(?i:json)[ \t]*(?=[{\[]))?([\s\S]*?)```")

_CLOSERS = {"{": "}", "[": "]"}


def _fenced_block(text: str) -> str | None:
    match = FENCED_BLOCK_RE.search(text)
    if match is None:
        return None
    body = match.group(1).strip()
    return body or None


def _balanced_block(text: str) -> str | None:
    """Return the first complete ``{...}`` or ``[...]`` span, honouring JSON strings.

    One pass over ``text``: open brackets sit on a stack with their offsets and
    the earliest-starting span that closes cleanly wins. A mismatched closer
    discards every open bracket.
    """
    stack: list[tuple[str, int]] = []
    best: tuple[int, int] | None = None
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char in _CLOSERS:
            stack.append((_CLOSERS[char], index))
        elif not stack:
            continue
        elif char == '"':
            in_string = True
        elif char in ("}", "]"):
            closer, start = stack.pop()
            if closer != char:
                stack.clear()
            elif best is None or start < best[0]:
                best = (start, index + 1)
            if not stack and best is not None:
                break
    if best is None:
        return None
    return text[best[0] : best[1]]


def extract_payload(text: str) -> str:
    """Pick the machine-readable part of a chat reply.

    A fenced code block wins; otherwise the first balanced brace/bracket block;
    otherwise the reply text itself.
    """
    fenced = _fenced_block(text)
    if fenced is not None:
        return fenced
    block = _balanced_block(text)
    if block is not None:
        return block.strip()
    return text
