"""Agent internals -- the pieces the Agent orchestrator in run_agent.py is built from.

Module Overview
---------------
**messages.py**
    Conversation data model -- messages, content segments, tool calls
    and tool results.

**provider.py** / **openai_provider.py**
    The streaming LLM provider contract and an OpenAI-compatible
    implementation. **provider_auth.py** handles provider login tokens.

**registry.py** / **plugin.py**
    Name-keyed registries for tools, providers and slash commands, and
    the plugin bundle that feeds them.

**permissions.py**
    Tool permission gate -- session grants, presets and interactive
    approval.

**tool_executor.py**
    Runs the tool calls of one assistant response, strictly in order.

**compaction.py** / **model_metadata.py**
    Context-window accounting, pruning and summarization.

**commands.py**, **events.py**, **cancellation.py**
    Slash commands, the typed event bus and cooperative cancellation.
"""
