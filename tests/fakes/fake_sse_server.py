"""Fake MCP server over Server-Sent Events, served through httpx.MockTransport.

``GET /sse`` opens the event stream and announces ``/messages`` as the POST
endpoint; every JSON-RPC request POSTed there is answered with a
``message`` event on the stream.

Usage::

    server = FakeSseServer()
    transport = SseTransport("http://mcp.test/sse", http_client=server.client())
    ...
    server.requests    # JSON-RPC requests received
    server.headers     # headers of the GET that opened the stream
"""

import json
import queue
from typing import Dict, List, Optional

import httpx

TOOLS = [
    {
        "name": "search",
        "description": "Search documents",
        "inputSchema": {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]},
    },
]


class FakeSseServer:
    def __init__(self, require_token: Optional[str] = None):
        self.require_token = require_token
        self.requests: List[dict] = []
        self.headers: Dict[str, str] = {}
        self._events: "queue.Queue[Optional[str]]" = queue.Queue()

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handle))

    def _stream(self):
        yield b"event: endpoint\ndata: /messages?session=1\n\n"
        while True:
            try:
                item = self._events.get(timeout=0.05)
            except queue.Empty:
                # keep-alive comment, lets the reader notice it was stopped
                yield b": ping\n\n"
                continue
            if item is None:
                return
            yield f"event: message\ndata: {item}\n\n".encode("utf-8")

    def close_stream(self) -> None:
        self._events.put(None)

    def _answer(self, msg: dict) -> Optional[dict]:
        method, req_id = msg.get("method"), msg.get("id")
        if req_id is None:
            return None
        if method == "initialize":
            result = {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-sse", "version": "1.0"},
            }
        elif method == "tools/list":
            result = {"tools": TOOLS}
        elif method == "tools/call":
            q = (msg.get("params") or {}).get("arguments", {}).get("q")
            result = {"content": [{"type": "text", "text": f"results for {q}"}]}
        else:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": "Method not found"}}
        return {"jsonrpc": "2.0", "id": req_id, "result": result}

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/sse":
            self.headers = dict(request.headers)
            if self.require_token and request.headers.get("authorization") != f"Bearer {self.require_token}":
                return httpx.Response(401, text="unauthorized")
            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=self._stream(),
            )
        if request.method == "POST" and request.url.path == "/messages":
            msg = json.loads(request.content)
            self.requests.append(msg)
            reply = self._answer(msg)
            if reply is not None:
                self._events.put(json.dumps(reply))
            return httpx.Response(202)
        return httpx.Response(404)
