"""
Tool, provider and command registries.

Each registry is a flat name -> definition mapping owned by one Agent and
passed explicitly to the code that needs it, so several agents can live in
one process with isolated registries.
"""

import logging
from typing import Dict, Iterable, List, Optional

from agent.plugin import CommandDefinition, ProviderDefinition, ToolDefinition

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised on duplicate registrations."""


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            logger.warning("Tool '%s' is already registered -- replacing", tool.name)
        self._tools[tool.name] = tool

    def register_all(self, tools: Iterable[ToolDefinition]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_all(self) -> List[ToolDefinition]:
        return list(self._tools.values())

    def get_names(self) -> List[str]:
        return list(self._tools.keys())

    def get_schemas(self) -> List[dict]:
        return [tool.to_schema() for tool in self._tools.values()]

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


class ProviderRegistry:
    def __init__(self):
        self._providers: Dict[str, ProviderDefinition] = {}

    def register(self, provider: ProviderDefinition) -> None:
        if provider.name in self._providers:
            raise RegistryError(f"Provider '{provider.name}' is already registered")
        self._providers[provider.name] = provider

    def unregister(self, name: str) -> bool:
        return self._providers.pop(name, None) is not None

    def get(self, name: str) -> Optional[ProviderDefinition]:
        return self._providers.get(name)

    def has(self, name: str) -> bool:
        return name in self._providers

    def get_names(self) -> List[str]:
        return list(self._providers.keys())

    def create(self, name: str, options: Optional[dict] = None):
        """Instantiate provider *name* via its factory; None if unknown."""
        definition = self._providers.get(name)
        if definition is None:
            return None
        return definition.factory(options or {})

    def first(self) -> Optional[ProviderDefinition]:
        return next(iter(self._providers.values()), None)


class CommandRegistry:
    def __init__(self):
        self._commands: Dict[str, CommandDefinition] = {}

    def register(self, command: CommandDefinition) -> None:
        if command.name in self._commands:
            raise RegistryError(f"Command '/{command.name}' is already registered")
        self._commands[command.name] = command

    def unregister(self, name: str) -> bool:
        return self._commands.pop(name, None) is not None

    def get(self, name: str) -> Optional[CommandDefinition]:
        return self._commands.get(name)

    def has(self, name: str) -> bool:
        return name in self._commands

    def get_all(self) -> List[CommandDefinition]:
        return sorted(self._commands.values(), key=lambda c: c.name)
