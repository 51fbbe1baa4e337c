"""In-process stand-ins for MCPClient, used with MCPManager(client_factory=...).

Usage::

    factory = FakeFactory({"github": {"tools": ["create_issue"]}})
    manager = MCPManager(client_factory=factory)
    manager.add_server("github", {"command": "unused"})
    factory.created[0].drop()      # simulate the server going away
"""

from tools.mcp_client import MCPConnectionError


class FakeClient:
    def __init__(self, name, tools=(), resources=(), prompts=(), results=None):
        self.name = name
        self.tools = [{"name": t, "description": f"{t} desc", "inputSchema": {"type": "object"}} for t in tools]
        self.resources = list(resources)
        self.prompts = list(prompts)
        self.results = results or {}
        self.calls = []
        self.tokens = []
        self.connected = False
        self.disconnect_handlers = []
        self.notification_handlers = {}

    def on_disconnect(self, handler):
        self.disconnect_handlers.append(handler)

    def on_notification(self, method, handler):
        self.notification_handlers[method] = handler

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def list_tools(self):
        return self.tools

    def call_tool(self, name, arguments=None, cancellation=None):
        self.calls.append((name, arguments))
        self.tokens.append(cancellation)
        return self.results.get(name, {"content": [{"type": "text", "text": f"{name} ok"}]})

    def read_resource(self, uri, cancellation=None):
        self.tokens.append(cancellation)
        return {"contents": [{"uri": uri, "text": f"body of {uri}"}]}

    def get_prompt(self, name, arguments=None, cancellation=None):
        self.tokens.append(cancellation)
        return {"messages": [{"role": "user", "content": {"type": "text", "text": f"{name}: {arguments}"}}]}

    # test helper
    def drop(self, reason="process exited"):
        self.connected = False
        for handler in self.disconnect_handlers:
            handler(self.name, reason)


class FakeFactory:
    """client_factory that builds FakeClients from per-server settings."""

    def __init__(self, specs):
        self.specs = specs
        self.created = []
        self.failing = set()

    def __call__(self, name, config, **kwargs):
        if name in self.failing:
            raise MCPConnectionError(f"cannot reach {name}")
        client = FakeClient(name, **self.specs.get(name, {}))
        self.created.append(client)
        return client
