"""Matching executed commands against a step's expected commands.

Matching is deliberately forgiving about presentation and strict about
intent: case and surrounding whitespace are ignored, extra flags on the
executed side are accepted, and a handful of well-known spelling variants
(``scontrol show nodes``, ``sinfo -o "%N %T"`` vs ``sinfo --format=...``)
fold together. Commands that only look right, such as a negative GPU index,
never match.
"""

from __future__ import annotations

import re
from typing import Iterable

from clustersim.parser import ParsedCommand, parse, split_pipeline

SUBSTITUTION_PLACEHOLDER = "12345"

_SUBSTITUTION = re.compile(r"\$\([^)]*\)|`[^`]*`")
_WHITESPACE = re.compile(r"\s+")

INVALID_PATTERNS = [
    re.compile(r"\s-i\s+-\d+"),
    re.compile(r"\s--id[\s=]+-\d+"),
    re.compile(r"nvidia-smi.*\s-gpu(\s|=|$)"),
    re.compile(r"^sinfo\s+help\b"),
    re.compile(r"^scontrol\s+help$"),
]

# Long spellings folded onto the short flag, per tool (flags are lower-cased first)
FLAG_ALIASES = {
    "nvidia-smi": {"id": "i", "query": "q", "list-gpus": "l", "display": "d", "gpu-reset": "r"},
    "sinfo": {"format": "o", "output-format": "o", "nodes": "n", "partition": "p", "long": "l"},
    "squeue": {"user": "u", "partition": "p", "jobs": "j", "format": "o", "states": "t"},
    "dcgmi": {"run": "r", "list": "l", "check": "c", "group": "g"},
    "sacct": {"jobs": "j", "user": "u", "format": "o"},
    "journalctl": {"unit": "u", "dmesg": "k", "boot": "b", "lines": "n"},
}

# Object names that may be written singular or plural after ``show``/``list``
OBJECT_SYNONYMS = {
    "nodes": "node",
    "partitions": "partition",
    "jobs": "job",
    "gpus": "gpu",
    "devices": "device",
    "steps": "step",
    "reservations": "reservation",
    "categories": "category",
}

_SHOW_VERBS = {"show", "list", "ls"}


def normalize_command(command: str) -> str:
    """Lower-case, trim, collapse whitespace and neutralize ``$(...)`` substitutions."""
    text = _SUBSTITUTION.sub(SUBSTITUTION_PLACEHOLDER, command.strip().lower())
    return _WHITESPACE.sub(" ", text)


def is_invalid_command(command: str) -> bool:
    """True for forms that look plausible but never do what the learner intends."""
    normalized = normalize_command(command)
    return any(pattern.search(normalized) for pattern in INVALID_PATTERNS)


def _canonical_flags(parsed: ParsedCommand) -> dict[str, object]:
    aliases = FLAG_ALIASES.get(parsed.base_command, {})
    return {aliases.get(name, name): value for name, value in parsed.flags.items()}


def _canonical_args(parsed: ParsedCommand) -> list[str]:
    args = list(parsed.args)
    for index in range(1, len(args)):
        if args[index - 1] in _SHOW_VERBS:
            args[index] = OBJECT_SYNONYMS.get(args[index], args[index])
    return args


def _segment_matches(executed: str, expected: str) -> bool:
    if executed == expected:
        return True
    exe = parse(executed)
    exp = parse(expected)
    if exe.base_command != exp.base_command:
        return False
    if not exp.flags and not exp.args:
        return True

    exe_flags = _canonical_flags(exe)
    exp_flags = _canonical_flags(exp)

    if exp.base_command == "sinfo" and "o" in exp_flags and "o" in exe_flags:
        # any output format satisfies an expected ``-o``
        exp_flags = {k: v for k, v in exp_flags.items() if k != "o"}
        exe_flags = {k: v for k, v in exe_flags.items() if k != "o"}

    for name, value in exp_flags.items():
        if name not in exe_flags:
            return False
        if value is not True and exe_flags[name] != value:
            return False

    exe_args = _canonical_args(exe)
    exp_args = _canonical_args(exp)
    if len(exe_args) < len(exp_args):
        return False
    return exe_args[: len(exp_args)] == exp_args


def matches_expected(executed: str, expected: str) -> bool:
    """Match one executed command against one expected command."""
    exe = normalize_command(executed)
    exp = normalize_command(expected)
    if exe == exp:
        return True
    exe_segments = [s.strip() for s in split_pipeline(exe)]
    exp_segments = [s.strip() for s in split_pipeline(exp)]
    if len(exp_segments) > 1:
        if len(exe_segments) != len(exp_segments):
            return False
        return all(_segment_matches(e, x) for e, x in zip(exe_segments, exp_segments))
    # an unpiped expectation only constrains the producing command
    return _segment_matches(exe_segments[0], exp_segments[0])


def validate_command_executed(executed: str, expected: Iterable[str]) -> bool:
    """True when ``executed`` satisfies any of the ``expected`` commands."""
    if not executed.strip() or is_invalid_command(executed):
        return False
    return any(matches_expected(executed, candidate) for candidate in expected)


def matched_expected(executed: str, expected: Iterable[str]) -> list[str]:
    """The expected commands that ``executed`` satisfies, in their given order."""
    if not executed.strip() or is_invalid_command(executed):
        return []
    return [candidate for candidate in expected if matches_expected(executed, candidate)]
