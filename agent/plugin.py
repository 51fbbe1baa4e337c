"""Plugin, tool, provider and command definitions.

A ``Plugin`` bundles tools, providers, commands and skill sources together
with optional lifecycle hooks. Hooks may be plain functions or coroutines.

Tool parameters are declared either as a pydantic ``BaseModel`` subclass
(validated with ``model_validate`` before the tool runs) or as a raw JSON
Schema dict, which is how federated MCP tools arrive.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel

from agent.cancellation import CancellationToken


@dataclass
class ToolExecuteResult:
    output: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return bool(self.metadata.get("error"))


@dataclass
class ToolContext:
    """Everything a tool may need from the agent for one invocation."""

    working_directory: str
    cancellation: CancellationToken
    session_id: Optional[str] = None
    get_todos: Optional[Callable[[], List[Dict[str, Any]]]] = None
    set_todos: Optional[Callable[[List[Dict[str, Any]]], None]] = None
    get_phases: Optional[Callable[[], List[Dict[str, Any]]]] = None
    set_phases: Optional[Callable[[List[Dict[str, Any]]], None]] = None
    emit: Optional[Callable[..., Any]] = None
    session_manager: Any = None
    skill_manager: Any = None
    extensions: Dict[str, Any] = field(default_factory=dict)


ParameterSchema = Union[Type[BaseModel], Dict[str, Any]]


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: ParameterSchema
    execute: Callable[[Any, ToolContext], Any]

    def json_schema(self) -> Dict[str, Any]:
        if isinstance(self.parameters, type) and issubclass(self.parameters, BaseModel):
            return self.parameters.model_json_schema()
        return dict(self.parameters)

    def to_schema(self) -> Dict[str, Any]:
        """Function-calling schema handed to the provider."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.json_schema(),
        }


@dataclass
class ProviderDefinition:
    name: str
    factory: Callable[[Dict[str, Any]], Any]


@dataclass
class CommandContext:
    agent: Any
    session_id: Optional[str] = None


@dataclass
class CommandResult:
    output: str
    should_continue: bool = False
    transformed_input: Optional[str] = None


@dataclass
class CommandDefinition:
    name: str
    description: str
    execute: Callable[[str, CommandContext], Any]


@dataclass
class SkillSource:
    name: str
    description: str
    path: str


@dataclass
class Plugin:
    name: str
    version: Optional[str] = None
    tools: List[ToolDefinition] = field(default_factory=list)
    providers: List[ProviderDefinition] = field(default_factory=list)
    commands: List[CommandDefinition] = field(default_factory=list)
    skill_sources: List[SkillSource] = field(default_factory=list)
    on_register: Optional[Callable[[Any], Any]] = None
    on_before_prompt: Optional[Callable[[str, Any], Any]] = None
    on_after_prompt: Optional[Callable[[Any, Any], Any]] = None
    on_shutdown: Optional[Callable[[Any], Any]] = None
    # Text appended to compaction summaries (todos, open files, ...).
    get_context_summary: Optional[Callable[[Any], Any]] = None
