"""Text filters applied to command output after a ``|``.

The shell runs the first pipeline segment through a simulator and feeds its
output through the remaining segments here. The same filters back the
standalone ``grep``/``head``/``tail``/``wc``/``sort`` commands.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional

from clustersim.parser import tokenize

LOGGER = logging.getLogger(__name__)

FilterResult = tuple[str, int]


def _lines(text: str) -> list[str]:
    return text.splitlines()


def _join(lines: list[str]) -> str:
    return "\n".join(lines) + "\n" if lines else ""


def _split_options(args: list[str], with_value: set[str] = frozenset()) -> tuple[dict[str, str], list[str]]:
    """POSIX-style option split: ``-in`` is ``-i -n``; ``-n 5`` and ``-5`` give counts."""
    options: dict[str, str] = {}
    operands: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            operands.extend(args[i + 1:])
            break
        if arg.startswith("--") and len(arg) > 2:
            name, _, value = arg[2:].partition("=")
            options[name] = value or "1"
        elif arg.startswith("-") and len(arg) > 1 and not operands:
            body = arg[1:]
            if body.isdigit():
                options["n"] = body
            else:
                for pos, ch in enumerate(body):
                    if ch in with_value:
                        rest = body[pos + 1:]
                        if rest:
                            options[ch] = rest
                        elif i + 1 < len(args):
                            i += 1
                            options[ch] = args[i]
                        break
                    options[ch] = "1"
        else:
            operands.append(arg)
        i += 1
    return options, operands


def grep(args: list[str], text: str) -> FilterResult:
    options, operands = _split_options(args, {"e", "m", "A", "B"})
    pattern = options.get("e")
    if pattern is None:
        if not operands:
            return "Usage: grep [OPTION]... PATTERNS [FILE]...\n", 2
        pattern = operands[0]
    flags = re.IGNORECASE if "i" in options or "ignore-case" in options else 0
    if "F" not in options and "E" not in options:
        # basic regex: \| is alternation, a bare | is literal
        pattern = pattern.replace("\\|", "\x00").replace("|", "\\|").replace("\x00", "|")
    if "F" in options:
        pattern = re.escape(pattern)
    if "w" in options:
        pattern = rf"\b(?:{pattern})\b"
    try:
        regex = re.compile(pattern, flags)
    except re.error as exc:
        return f"grep: Invalid regular expression: {exc}\n", 2
    invert = "v" in options or "invert-match" in options
    matched = [(n, line) for n, line in enumerate(_lines(text), 1) if bool(regex.search(line)) != invert]
    if "m" in options and options["m"].isdigit():
        matched = matched[: int(options["m"])]
    exit_code = 0 if matched else 1
    if "c" in options or "count" in options:
        return f"{len(matched)}\n", exit_code
    if "q" in options or "quiet" in options:
        return "", exit_code
    if "n" in options:
        return _join([f"{n}:{line}" for n, line in matched]), exit_code
    return _join([line for _, line in matched]), exit_code


def _count(options: dict[str, str], default: int = 10) -> Optional[int]:
    value = options.get("n", options.get("lines", str(default)))
    return int(value) if value.isdigit() else None


def head(args: list[str], text: str) -> FilterResult:
    options, _ = _split_options(args, {"n"})
    count = _count(options)
    if count is None:
        return f"head: invalid number of lines: '{options.get('n')}'\n", 1
    return _join(_lines(text)[:count]), 0


def tail(args: list[str], text: str) -> FilterResult:
    options, _ = _split_options(args, {"n"})
    count = _count(options)
    if count is None:
        return f"tail: invalid number of lines: '{options.get('n')}'\n", 1
    lines = _lines(text)
    return _join(lines[-count:] if count else []), 0


def wc(args: list[str], text: str) -> FilterResult:
    options, _ = _split_options(args)
    counts = {"l": text.count("\n"), "w": len(text.split()), "c": len(text.encode())}
    selected = [k for k in ("l", "w", "c") if k in options] or ["l", "w", "c"]
    if len(selected) == 1:
        return f"{counts[selected[0]]}\n", 0
    return " ".join(f"{counts[k]:>7}" for k in selected) + "\n", 0


def sort(args: list[str], text: str) -> FilterResult:
    options, _ = _split_options(args, {"k", "t"})
    lines = _lines(text)
    if "n" in options:
        def key(line: str) -> float:
            m = re.match(r"\s*(-?\d+(?:\.\d+)?)", line)
            return float(m.group(1)) if m else 0.0
        lines.sort(key=key, reverse="r" in options)
    else:
        lines.sort(reverse="r" in options)
    if "u" in options:
        lines = list(dict.fromkeys(lines))
    return _join(lines), 0


def uniq(args: list[str], text: str) -> FilterResult:
    options, _ = _split_options(args)
    groups: list[list] = []
    for line in _lines(text):
        if groups and groups[-1][0] == line:
            groups[-1][1] += 1
        else:
            groups.append([line, 1])
    if "c" in options:
        return _join([f"{count:>7} {line}" for line, count in groups]), 0
    return _join([line for line, _ in groups]), 0


FILTERS: dict[str, Callable[[list[str], str], FilterResult]] = {
    "grep": grep,
    "egrep": lambda args, text: grep(["-E"] + args, text),
    "head": head,
    "tail": tail,
    "wc": wc,
    "sort": sort,
    "uniq": uniq,
}


def is_filter(name: str) -> bool:
    return name in FILTERS


def apply_filter(segment: str, text: str) -> Optional[FilterResult]:
    """Run one pipeline segment over ``text``; None if it is not a text filter."""
    tokens = tokenize(segment)
    if not tokens or tokens[0] not in FILTERS:
        return None
    LOGGER.debug("Applying filter %r", segment)
    return FILTERS[tokens[0]](tokens[1:], text)


def apply_pipeline(segments: list[str], text: str, exit_code: int = 0) -> tuple[str, int, Optional[str]]:
    """Feed ``text`` through every segment in turn.

    Returns:
        ``(output, exit_code, unsupported)``; ``unsupported`` names the first
        segment command that is not a text filter, in which case the output
        is the text as it stood before that segment
    """
    for segment in segments:
        result = apply_filter(segment, text)
        if result is None:
            tokens = tokenize(segment)
            return text, 127, tokens[0] if tokens else segment
        text, exit_code = result
    return text, exit_code, None
