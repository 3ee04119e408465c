"""
Dev stub of the GHL MCP endpoint.

Speaks enough streamable-HTTP MCP for local runs and tests: initialize with a
session header, tools/list, and tools/call against in-memory CRM data. Set
DEV_MCP_RESPONSE_MODE=sse to answer with event streams that put a progress
notification in front of every result.

    uvicorn dev_backend.main:app --port 9100
"""
from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

SESSION_HEADER = "Mcp-Session-Id"

TOOLS = [
    {"name": "contacts_get-contacts", "description": "Get contacts"},
    {"name": "contacts_get-contact", "description": "Get contact by ID"},
    {"name": "contacts_upsert-contact", "description": "Create or update contact"},
    {"name": "contacts_add-tags", "description": "Add tags to contact"},
    {"name": "contacts_remove-tags", "description": "Remove tags from contact"},
    {"name": "contacts_get-all-tasks", "description": "Get all tasks for contact"},
    {"name": "conversations_search-conversation", "description": "Search conversations"},
    {"name": "conversations_get-messages", "description": "Get messages"},
    {"name": "conversations_send-a-new-message", "description": "Send message"},
    {"name": "opportunities_get-pipelines", "description": "Get pipelines"},
    {"name": "opportunities_search-opportunity", "description": "Search opportunities"},
    {"name": "opportunities_update-opportunity", "description": "Update opportunity"},
]


def sample_data() -> Dict[str, Any]:
    return {
        "contacts": [
            {"id": "c1", "firstName": "John", "lastName": "Doe", "email": "john@example.com",
             "lastActivity": "2025-01-01T00:00:00Z", "tags": ["lead"]},
            {"id": "c2", "firstName": "Jane", "lastName": "Smith", "email": "jane@example.com",
             "dateAdded": "2025-01-05T00:00:00Z", "tags": []},
        ],
        "tasks": {
            "c1": [{"id": "t1", "title": "Call back", "dueDate": "2025-01-02T00:00:00Z", "completed": False}],
        },
        "conversations": {"c1": [{"id": "conv1", "contactId": "c1"}]},
        "messages": {
            "conv1": [
                {"id": "m1", "direction": "inbound", "dateAdded": "2025-01-01T10:00:00Z"},
                {"id": "m2", "direction": "outbound", "dateAdded": "2025-01-01T11:00:00Z"},
            ],
        },
        "pipelines": [
            {"id": "pipe1", "name": "Sales", "stages": [
                {"id": "stage1", "name": "New"},
                {"id": "stage2", "name": "Proposal Sent"},
            ]},
        ],
        "opportunities": [
            {"id": "opp1", "name": "John Doe - Audit", "pipelineId": "pipe1", "pipelineStageId": "stage1",
             "monetaryValue": 2500, "lastStageChangeAt": "2025-01-10T00:00:00Z"},
            {"id": "opp2", "name": "Jane Smith - Build", "pipelineId": "pipe1", "pipelineStageId": "stage2",
             "monetaryValue": 15000, "lastStageChangeAt": "2025-01-14T00:00:00Z"},
        ],
    }


@dataclass
class StubState:
    data: Dict[str, Any]
    mode: str = "json"
    sessions: List[str] = field(default_factory=list)
    requests: List[Dict[str, Any]] = field(default_factory=list)
    failures: Dict[str, int] = field(default_factory=dict)


def _text_result(payload: Any) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": json.dumps(payload)}]}


def _handle_tool(data: Dict[str, Any], name: str, args: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if name == "contacts_get-contacts":
        contacts = data["contacts"]
        limit = args.get("limit")
        return _text_result({"contacts": contacts[:limit] if limit else contacts})
    if name == "contacts_get-contact":
        match = next((c for c in data["contacts"] if c["id"] == args.get("contactId")), None)
        return _text_result({"contact": match})
    if name == "contacts_get-all-tasks":
        return _text_result({"tasks": data["tasks"].get(args.get("contactId"), [])})
    if name == "conversations_search-conversation":
        return _text_result({"conversations": data["conversations"].get(args.get("contactId"), [])})
    if name == "conversations_get-messages":
        messages = data["messages"].get(args.get("conversationId"), [])
        limit = args.get("limit")
        return _text_result({"messages": messages[:limit] if limit else messages})
    if name == "opportunities_get-pipelines":
        return _text_result({"pipelines": data["pipelines"]})
    if name == "opportunities_search-opportunity":
        pipeline_id = args.get("pipelineId")
        opps = [o for o in data["opportunities"] if not pipeline_id or o.get("pipelineId") == pipeline_id]
        return _text_result({"opportunities": opps})
    if name in {t["name"] for t in TOOLS}:
        return _text_result({"success": True, "arguments": args})
    return None


def create_app(data: Optional[Dict[str, Any]] = None, mode: Optional[str] = None) -> FastAPI:
    app = FastAPI(title="Dev stub for the GHL MCP endpoint")
    state = StubState(
        data=data if data is not None else sample_data(),
        mode=mode or os.getenv("DEV_MCP_RESPONSE_MODE", "json"),
    )
    app.state.stub = state

    def reply(message: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Response:
        if state.mode == "sse":
            progress = {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}}
            body = "".join(f"event: message\ndata: {json.dumps(m)}\n\n" for m in (progress, message))
            return Response(body, media_type="text/event-stream", headers=headers)
        return JSONResponse(message, headers=headers)

    @app.post("/mcp/")
    async def handle(request: Request) -> Response:
        if not request.headers.get("authorization", "").startswith("Bearer "):
            return JSONResponse({"error": "unauthorized"}, status_code=401)
        if not request.headers.get("locationid"):
            return JSONResponse({"error": "locationId header required"}, status_code=400)

        body = await request.json()
        state.requests.append({"body": body, "headers": dict(request.headers)})
        method = body.get("method")
        request_id = body.get("id")

        injected = state.failures.get(method, 0)
        if injected:
            state.failures[method] = injected - 1
            return JSONResponse({"error": "upstream unavailable"}, status_code=503)

        if method == "initialize":
            session_id = uuid.uuid4().hex
            state.sessions.append(session_id)
            result = {
                "protocolVersion": body.get("params", {}).get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "ghl-mcp-dev-stub", "version": "1.0.0"},
            }
            return reply({"jsonrpc": "2.0", "id": request_id, "result": result}, {SESSION_HEADER: session_id})

        if request.headers.get(SESSION_HEADER.lower()) not in state.sessions:
            return JSONResponse({"error": "unknown session"}, status_code=404)

        if request_id is None:
            return Response(status_code=202)
        if method == "tools/list":
            return reply({"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOLS}})
        if method == "tools/call":
            params = body.get("params") or {}
            result = _handle_tool(state.data, params.get("name"), params.get("arguments") or {})
            if result is None:
                error = {"code": -32602, "message": f"Unknown tool: {params.get('name')}"}
                return reply({"jsonrpc": "2.0", "id": request_id, "error": error})
            return reply({"jsonrpc": "2.0", "id": request_id, "result": result})
        error = {"code": -32601, "message": f"Method not found: {method}"}
        return reply({"jsonrpc": "2.0", "id": request_id, "error": error})

    return app


app = create_app()
