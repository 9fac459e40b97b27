"""Read-only registry of command definitions.

Definitions live in YAML files under ``clustersim/definitions/commands``; each
file holds a list of tool entries::

    - name: nvidia-smi
      category: gpu_monitoring
      description: NVIDIA System Management Interface
      synopsis: nvidia-smi [OPTION1 [ARG1]] ...
      options:
        - flags: ["-L", "--list-gpus"]
          description: List each of the NVIDIA GPUs in the system
          requires_root: false
      subcommands:
        - name: nvlink
          description: Display NVLink status
      exit_codes:
        0: Success
      examples:
        - command: nvidia-smi -L
          description: List GPUs with their UUIDs

The files are read once, the first time any lookup needs them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

import yaml

from clustersim.configs.config_io import load_yaml_file
from clustersim.errors import DefinitionError
from clustersim.parser import parse

LOGGER = logging.getLogger(__name__)

DEFINITIONS_DIR = os.path.join(os.path.dirname(__file__), "commands")
CONSISTENCY_GROUPS_FILE = os.path.join(os.path.dirname(__file__), "consistency_groups.yaml")


@dataclass
class OptionDefinition:
    flags: list[str]
    description: str = ""
    argument: Optional[str] = None
    requires_root: bool = False

    @property
    def names(self) -> list[str]:
        """Flag names without leading dashes, as the parser stores them."""
        return [f.lstrip("-") for f in self.flags]


@dataclass
class SubcommandDefinition:
    name: str
    description: str = ""
    usage: str = ""
    requires_root: bool = False


@dataclass
class CommandDefinition:
    name: str
    category: str = "general"
    description: str = ""
    synopsis: str = ""
    options: list[OptionDefinition] = field(default_factory=list)
    subcommands: list[SubcommandDefinition] = field(default_factory=list)
    exit_codes: dict[int, str] = field(default_factory=dict)
    examples: list[dict[str, str]] = field(default_factory=list)
    see_also: list[str] = field(default_factory=list)

    def find_option(self, flag: str) -> Optional[OptionDefinition]:
        name = flag.lstrip("-")
        for option in self.options:
            if name in option.names:
                return option
        return None

    def find_subcommand(self, name: str) -> Optional[SubcommandDefinition]:
        for sub in self.subcommands:
            if sub.name == name:
                return sub
        return None


def _command_from_dict(data: dict[str, Any], source: str) -> CommandDefinition:
    if not isinstance(data, dict) or not data.get("name"):
        raise DefinitionError(f"{source}: every entry needs a 'name'")
    try:
        return CommandDefinition(
            name=str(data["name"]),
            category=str(data.get("category", "general")),
            description=str(data.get("description", "")),
            synopsis=str(data.get("synopsis", "")),
            options=[
                OptionDefinition(
                    flags=[str(f) for f in opt["flags"]],
                    description=str(opt.get("description", "")),
                    argument=opt.get("argument"),
                    requires_root=bool(opt.get("requires_root", False)),
                )
                for opt in data.get("options") or []
            ],
            subcommands=[
                SubcommandDefinition(
                    name=str(sub["name"]),
                    description=str(sub.get("description", "")),
                    usage=str(sub.get("usage", "")),
                    requires_root=bool(sub.get("requires_root", False)),
                )
                for sub in data.get("subcommands") or []
            ],
            exit_codes={int(k): str(v) for k, v in (data.get("exit_codes") or {}).items()},
            examples=[dict(e) for e in data.get("examples") or []],
            see_also=[str(s) for s in data.get("see_also") or []],
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DefinitionError(f"{source}: malformed definition for {data.get('name')!r}: {e}") from e


class CommandDefinitionRegistry:
    """Lazily loaded command metadata used by help, explain and root checks."""

    def __init__(self, definitions_dir: str = DEFINITIONS_DIR):
        self.definitions_dir = definitions_dir
        self._commands: Optional[dict[str, CommandDefinition]] = None

    def _load(self) -> dict[str, CommandDefinition]:
        if self._commands is not None:
            return self._commands
        commands: dict[str, CommandDefinition] = {}
        if not os.path.isdir(self.definitions_dir):
            raise DefinitionError(f"Definitions directory not found: {self.definitions_dir}")
        for filename in sorted(os.listdir(self.definitions_dir)):
            if not filename.endswith((".yaml", ".yml")):
                continue
            path = os.path.join(self.definitions_dir, filename)
            try:
                with open(path, encoding="utf-8") as f:
                    entries = yaml.safe_load(f) or []
            except yaml.YAMLError as e:
                raise DefinitionError(f"Could not parse {path}: {e}") from e
            if not isinstance(entries, list):
                raise DefinitionError(f"{path}: expected a list of command definitions")
            for entry in entries:
                definition = _command_from_dict(entry, filename)
                commands[definition.name] = definition
        LOGGER.debug("Loaded %d command definitions from %s", len(commands), self.definitions_dir)
        self._commands = commands
        return commands

    def get(self, name: str) -> Optional[CommandDefinition]:
        return self._load().get(name)

    def has(self, name: str) -> bool:
        return name in self._load()

    def names(self) -> list[str]:
        return sorted(self._load())

    def by_category(self) -> dict[str, list[str]]:
        categories: dict[str, list[str]] = {}
        for definition in self._load().values():
            categories.setdefault(definition.category, []).append(definition.name)
        return {k: sorted(v) for k, v in sorted(categories.items())}

    def requires_root(self, name: str, flags: Iterable[str], subcommands: Sequence[str] = ()) -> bool:
        """Whether invoking ``name`` with ``flags`` (or its first subcommand) needs root."""
        definition = self.get(name)
        if definition is None:
            return False
        for flag in flags:
            option = definition.find_option(flag)
            if option is not None and option.requires_root:
                return True
        for token in list(subcommands)[:1]:
            sub = definition.find_subcommand(token)
            if sub is not None and sub.requires_root:
                return True
        return False

    def format_help(self, name: str) -> Optional[str]:
        """Usage text for ``name``, or None if it has no definition."""
        definition = self.get(name)
        if definition is None:
            return None
        lines = [f"{definition.name} - {definition.description}", ""]
        if definition.synopsis:
            lines += [f"Usage: {definition.synopsis}", ""]
        if definition.subcommands:
            lines.append("Subcommands:")
            width = max(len(s.name) for s in definition.subcommands) + 2
            lines += [f"  {s.name.ljust(width)}{s.description}" for s in definition.subcommands]
            lines.append("")
        if definition.options:
            lines.append("Options:")
            for option in definition.options:
                flags = ", ".join(option.flags)
                if option.argument:
                    flags += f" {option.argument}"
                lines.append(f"  {flags.ljust(30)}{option.description}")
            lines.append("")
        if definition.examples:
            lines.append("Examples:")
            lines += [f"  {e.get('command', '')}" for e in definition.examples]
        return "\n".join(lines).rstrip() + "\n"

    def explain(self, text: str) -> Optional[str]:
        """Explain a command, one of its flags, or a subcommand.

        ``text`` is a command line such as ``nvidia-smi``, ``nvidia-smi -L``
        or ``dcgmi diag``; the first flag or subcommand found is explained.
        """
        parsed = parse(text)
        definition = self.get(parsed.base_command)
        if definition is None:
            return None
        lines = [f"{definition.name}: {definition.description}"]
        for flag in parsed.flags:
            option = definition.find_option(flag)
            if option is not None:
                lines.append(f"  {', '.join(option.flags)}: {option.description}")
                if option.requires_root:
                    lines.append("  (requires root privileges)")
            else:
                lines.append(f"  -{flag}: not a recognized option of {definition.name}")
        for token in parsed.subcommands:
            sub = definition.find_subcommand(token)
            if sub is not None:
                lines.append(f"  {sub.name}: {sub.description}")
                if sub.usage:
                    lines.append(f"  usage: {sub.usage}")
        if len(lines) == 1 and definition.examples:
            lines.append("Examples:")
            lines += [f"  {e.get('command', '')}  # {e.get('description', '')}" for e in definition.examples]
        if definition.see_also:
            lines.append(f"See also: {', '.join(definition.see_also)}")
        return "\n".join(lines) + "\n"

    def examples(self) -> list[dict[str, str]]:
        """All examples across definitions, tagged with their command."""
        result = []
        for name in self.names():
            for example in self.get(name).examples:
                result.append({"tool": name, **example})
        return result


def load_consistency_groups(filepath: str = CONSISTENCY_GROUPS_FILE) -> dict[str, Any]:
    """Consistency-group declarations: which tools must agree on which state."""
    try:
        return load_yaml_file(filepath)
    except (OSError, yaml.YAMLError) as e:
        raise DefinitionError(f"Could not load consistency groups from {filepath}: {e}") from e
