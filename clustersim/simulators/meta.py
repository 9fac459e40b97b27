"""Meta-commands backed by the command definition registry: ``help``, ``explain``, ``practice``."""

from __future__ import annotations

import logging

from clustersim.parser import ParsedCommand, split_pipeline
from clustersim.simulators.base import (
    BOLD,
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    colorize,
    error,
    success,
    usage_error,
)

LOGGER = logging.getLogger(__name__)


class MetaSimulator:
    """Answers ``help``, ``explain`` and ``practice`` from command definitions."""

    METADATA = SimulatorMetadata(
        name="meta",
        version="1.0",
        description="Help, explanations and practice exercises",
        commands=("help", "explain", "practice"),
    )

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        if context.registry is None:
            return error(f"{parsed.base_command}: command definitions are not available", 1)
        if parsed.base_command == "help":
            return self._help(parsed, context)
        if parsed.base_command == "explain":
            return self._explain(parsed, context)
        if parsed.base_command == "practice":
            return self._practice(parsed, context)
        return error(f"{parsed.base_command}: command not found", 127)

    def _help(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        registry = context.registry
        if parsed.args:
            text = registry.format_help(parsed.args[0])
            if text is None:
                return error(f"help: no help topics match '{parsed.args[0]}'. Try 'help' to list commands.", 1)
            return success(text)
        lines = [colorize("Available commands", BOLD), ""]
        for category, names in registry.by_category().items():
            lines.append(f"{category.replace('_', ' ').title()}:")
            lines.append("  " + ", ".join(names))
        lines += ["", "Type 'help <command>' for usage, 'explain <command> [flag]' for details."]
        return success("\n".join(lines) + "\n")

    def _explain(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        # re-join from raw so "explain nvidia-smi -L" keeps the flag for the target command
        target = split_pipeline(parsed.raw)[0].strip()[len("explain"):].strip()
        if not target:
            return usage_error("explain", "missing command (e.g. explain nvidia-smi -q)", 1)
        text = context.registry.explain(target)
        if text is None:
            return error(f"explain: no documentation for '{target.split()[0]}'", 1)
        return success(text)

    def _practice(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        registry = context.registry
        examples = registry.examples()
        if parsed.args and parsed.args[0] != "next":
            wanted = parsed.args[0]
            categories = registry.by_category()
            tools = categories.get(wanted, [wanted])
            examples = [e for e in examples if e["tool"] in tools]
            if not examples:
                return error(f"practice: no exercises for '{wanted}'", 1)
        if not examples:
            return success("No practice exercises available.\n")
        if parsed.args[:1] == ["next"]:
            example = examples[len(context.history) % len(examples)]
            return success(f"Try this: {example.get('command', '')}\n  {example.get('description', '')}\n")
        lines = [colorize("Practice exercises", BOLD), ""]
        lines += [f"  {e.get('command', ''):<45} {e.get('description', '')}" for e in examples]
        return success("\n".join(lines) + "\n")
