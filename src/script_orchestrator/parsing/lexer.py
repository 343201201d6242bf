"""Minimal lexical helpers for PowerShell text.

These are not a tokenizer. They blank out comments and string literals
so that structural checks and statement regexes only see code. Every
blanked character is replaced with a space, newlines are kept, so
offsets and line numbers stay valid.
"""

from __future__ import annotations

import re

_NON_NEWLINE = re.compile(r"[^\n]")

_OPENERS = {"{": "}", "(": ")", "[": "]"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}


def _blank(segment: str) -> str:
    return _NON_NEWLINE.sub(" ", segment)


def line_of(text: str, offset: int) -> int:
    """1-based line number of a character offset."""
    return text.count("\n", 0, offset) + 1


def _string_end(text: str, start: int, quote: str) -> int:
    """Index just past the closing quote, or -1 if unterminated."""
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if quote == '"' and ch == "`":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return -1


def strip_comments_and_strings(text: str) -> tuple[str, list[str]]:
    """Blank out comments, here-strings and quoted strings.

    Returns:
        The code-only text and a list of diagnostics for unterminated
        constructs. An unterminated construct blanks to the end of text.
    """
    out: list[str] = []
    diagnostics: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if text.startswith("<#", i):
            end = text.find("#>", i + 2)
            if end == -1:
                diagnostics.append(f"Unterminated block comment starting at line {line_of(text, i)}")
                stop = n
            else:
                stop = end + 2
        elif ch == "#":
            end = text.find("\n", i)
            stop = n if end == -1 else end
        elif text.startswith(('@"', "@'"), i):
            terminator = "\n" + text[i + 1] + "@"
            end = text.find(terminator, i + 2)
            if end == -1:
                diagnostics.append(f"Unterminated here-string starting at line {line_of(text, i)}")
                stop = n
            else:
                stop = end + len(terminator)
        elif ch in "'\"":
            end = _string_end(text, i, ch)
            if end == -1:
                diagnostics.append(f"Unterminated string starting at line {line_of(text, i)}")
                stop = n
            else:
                stop = end
        else:
            out.append(ch)
            i += 1
            continue
        out.append(_blank(text[i:stop]))
        i = stop
    return "".join(out), diagnostics


def mask_block_comments(text: str) -> str:
    """Blank out only ``<# ... #>`` blocks (statement regexes still see line comments)."""
    return re.sub(r"<#.*?(#>|\Z)", lambda m: _blank(m.group(0)), text, flags=re.DOTALL)


def check_balance(code: str) -> list[str]:
    """Report the first unbalanced brace, paren or bracket in code-only text."""
    stack: list[tuple[str, int]] = []
    for offset, ch in enumerate(code):
        if ch in _OPENERS:
            stack.append((ch, offset))
        elif ch in _CLOSERS:
            if not stack or stack[-1][0] != _CLOSERS[ch]:
                return [f"Unexpected '{ch}' at line {line_of(code, offset)}"]
            stack.pop()
    if stack:
        ch, offset = stack[-1]
        return [f"Unclosed '{ch}' opened at line {line_of(code, offset)}"]
    return []


def top_level_split(text: str, separator: str = ",") -> list[str]:
    """Split on a separator that is not nested inside brackets."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS and depth > 0:
            depth -= 1
        if ch == separator and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


def top_level_text(text: str) -> str:
    """Keep only the characters that sit outside any brackets."""
    out: list[str] = []
    depth = 0
    for ch in text:
        if ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS and depth > 0:
            depth -= 1
        elif depth == 0:
            out.append(ch)
    return "".join(out)


def matching_close(code: str, open_index: int) -> int:
    """Index of the bracket closing the one at ``open_index``, or -1."""
    depth = 0
    for i in range(open_index, len(code)):
        ch = code[i]
        if ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i
    return -1
