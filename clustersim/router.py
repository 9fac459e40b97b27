"""Command router: tool name to simulator lookup.

Dispatch is a plain dictionary lookup on ``parsed.base_command``. The last
registration for a name wins, so meta-commands and test doubles can be
registered over the defaults.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from clustersim.parser import ParsedCommand, parse
from clustersim.simulators import default_simulators
from clustersim.simulators.base import CommandContext, CommandResult, Simulator

LOGGER = logging.getLogger(__name__)


class CommandRouter:
    """Maps command names to the simulator that answers them."""

    def __init__(self):
        self._handlers: dict[str, Simulator] = {}

    def register(self, name: str, handler: Simulator) -> None:
        """Register a handler for one command name, replacing any previous one."""
        if name in self._handlers:
            LOGGER.debug("Replacing handler for %s", name)
        self._handlers[name] = handler

    def register_many(self, names: Iterable[str], handler: Simulator) -> None:
        for name in names:
            self.register(name, handler)

    def register_simulator(self, simulator: Simulator) -> None:
        """Register a simulator under every command its metadata lists."""
        self.register_many(simulator.describe().commands, simulator)

    def get(self, name: str) -> Optional[Simulator]:
        return self._handlers.get(name)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def by_simulator(self) -> dict[str, list[str]]:
        """Registered names grouped by the handling simulator's name."""
        groups: dict[str, list[str]] = {}
        for name in self.names():
            groups.setdefault(self._handlers[name].describe().name, []).append(name)
        return groups

    def bind(self, parsed: ParsedCommand) -> ParsedCommand:
        """Re-parse ``parsed`` with the value-taking long options of its handler."""
        handler = self._handlers.get(parsed.base_command)
        if handler is None or not parsed.raw:
            return parsed
        value_flags = getattr(handler.describe(), "value_flags", ())
        if not value_flags:
            return parsed
        return parse(parsed.raw, value_flags)

    def dispatch(self, parsed: ParsedCommand, context: CommandContext) -> Optional[CommandResult]:
        """Run ``parsed`` through its handler; None when no handler is registered."""
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return None
        parsed = self.bind(parsed)
        LOGGER.debug("Dispatching %r to %s", parsed.base_command, handler.describe().name)
        return handler.execute(parsed, context)


def build_default_router() -> CommandRouter:
    """Router with every tool simulator and the help/explain/practice meta-commands."""
    router = CommandRouter()
    for simulator in default_simulators():
        router.register_simulator(simulator)
    LOGGER.debug("Router built with %d commands", len(router.names()))
    return router
