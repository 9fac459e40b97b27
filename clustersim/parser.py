"""Command-line parsing for simulated tools.

``parse`` turns one raw input line into a :class:`ParsedCommand`. The grammar
follows what the simulated tools expect rather than POSIX getopt: ``-la`` is a
single flag named ``la`` because vocabularies such as ``nvidia-smi -mig`` and
``nvidia-smi mig -lgip`` depend on multi-letter short flags.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

FlagValue = Union[bool, str]

_NEGATIVE_NUMBER = re.compile(r"^-\d+(\.\d+)?$")


@dataclass
class ParsedCommand:
    """Structured form of one command line.

    Attributes:
        base_command: First token (tool name); empty for blank input
        subcommands: Bare tokens before the first flag
        positional_args: Bare tokens after the first flag
        flags: Flag name (without dashes) to ``True`` or its string value
        raw: The input line, unmodified
        pipe_segments: Verbatim text of each segment after the first ``|``
    """

    base_command: str = ""
    subcommands: list[str] = field(default_factory=list)
    positional_args: list[str] = field(default_factory=list)
    flags: dict[str, FlagValue] = field(default_factory=dict)
    raw: str = ""
    pipe_segments: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.base_command

    @property
    def args(self) -> list[str]:
        """All bare tokens, subcommands first."""
        return self.subcommands + self.positional_args

    def has_flag(self, *names: str) -> bool:
        return any(name in self.flags for name in names)

    def get_flag(self, *names: str, default: Any = None) -> Any:
        """Return the value of the first flag present among ``names``."""
        for name in names:
            if name in self.flags:
                return self.flags[name]
        return default

    def get_flag_str(self, *names: str, default: str | None = None) -> str | None:
        """Like :meth:`get_flag` but ignores flags given without a value."""
        for name in names:
            value = self.flags.get(name)
            if isinstance(value, str):
                return value
        return default

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_command": self.base_command,
            "subcommands": list(self.subcommands),
            "positional_args": list(self.positional_args),
            "flags": dict(self.flags),
            "raw": self.raw,
            "pipe_segments": list(self.pipe_segments),
        }


def split_pipeline(line: str) -> list[str]:
    """Split ``line`` on ``|`` characters that sit outside quotes."""
    segments = []
    current = []
    quote = None
    for ch in line:
        if quote:
            if ch == quote:
                quote = None
            current.append(ch)
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch == "|":
            segments.append("".join(current))
            current = []
        else:
            current.append(ch)
    segments.append("".join(current))
    return segments


def tokenize(line: str) -> list[str]:
    """Split on whitespace outside single or double quotes.

    Quotes are removed and a quoted span joins the token around it. An
    unterminated quote runs to the end of the line.
    """
    tokens = []
    current = []
    quote = None
    in_token = False
    for ch in line:
        if quote:
            if ch == quote:
                quote = None
            else:
                current.append(ch)
        elif ch in ("'", '"'):
            quote = ch
            in_token = True
        elif ch.isspace():
            if in_token:
                tokens.append("".join(current))
                current = []
                in_token = False
        else:
            current.append(ch)
            in_token = True
    if in_token:
        tokens.append("".join(current))
    return tokens


def _is_flag(token: str) -> bool:
    if len(token) < 2 or not token.startswith("-"):
        return False
    return not _NEGATIVE_NUMBER.match(token)


def parse(line: str, value_flags: Iterable[str] = ()) -> ParsedCommand:
    """Parse one command line.

    Args:
        line: Raw input, possibly containing pipes and quotes
        value_flags: Long flag names that take the next token as their value
            (``--iterations 20``). Any other bare ``--name`` is boolean and
            the token after it stays a positional argument.

    Returns:
        ParsedCommand; never raises. Only the first pipe segment is parsed
        structurally, the rest are kept verbatim in ``pipe_segments``.
    """
    if not isinstance(line, str):
        return ParsedCommand()
    segments = split_pipeline(line)
    command = ParsedCommand(raw=line, pipe_segments=[s.strip() for s in segments[1:]])
    tokens = tokenize(segments[0])
    if not tokens:
        return command

    takes_value = set(value_flags)
    command.base_command = tokens[0]
    seen_flag = False
    end_of_flags = False
    i = 1
    while i < len(tokens):
        token = tokens[i]
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None

        if end_of_flags:
            command.positional_args.append(token)
        elif token == "--":
            end_of_flags = True
            seen_flag = True
        elif token.startswith("--"):
            seen_flag = True
            name, sep, value = token[2:].partition("=")
            if sep:
                command.flags[name] = value
            elif name in takes_value and nxt is not None and not _is_flag(nxt):
                command.flags[name] = nxt
                i += 1
            else:
                command.flags[name] = True
        elif _is_flag(token):
            seen_flag = True
            name = token[1:]
            if nxt is not None and not _is_flag(nxt):
                command.flags[name] = nxt
                i += 1
            else:
                command.flags[name] = True
        elif seen_flag:
            command.positional_args.append(token)
        else:
            command.subcommands.append(token)
        i += 1
    return command
