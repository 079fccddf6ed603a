"""
HTTP API for the ChatBridge MCP framework, served with aiohttp.

The chat endpoint streams newline-delimited JSON events; the MCP
management endpoints wrap MCPService results in `{success, data, error}`
envelopes.
"""

import json
from contextlib import aclosing
from typing import TYPE_CHECKING, Any, Dict

from aiohttp import web

from chatbridge_mcp.chat.models import ErrorCode, ErrorEvent, encode_event
from chatbridge_mcp.errors import ValidationError
from chatbridge_mcp.mcp.service import ApiResponse
from chatbridge_mcp.utils.logging import get_logger

if TYPE_CHECKING:
    from chatbridge_mcp.app import ChatBridgeApp

logger = get_logger(__name__)

APP_KEY = web.AppKey("chatbridge_app", object)

NDJSON_CONTENT_TYPE = "application/x-ndjson"

routes = web.RouteTableDef()


def _chat_app(request: web.Request) -> "ChatBridgeApp":
    return request.app[APP_KEY]


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise ValidationError("Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _envelope(response: ApiResponse) -> web.Response:
    return web.json_response(response.to_dict(), status=200 if response.success else 500)


def _require_connected(request: web.Request) -> str:
    server_id = request.match_info["server_id"]
    if not _chat_app(request).connection_manager.is_connected(server_id):
        raise ValidationError("Server is not connected")
    return server_id


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ValidationError as exc:
        return web.json_response({"success": False, "error": str(exc)}, status=400)
    except web.HTTPException:
        raise
    except Exception as exc:
        logger.exception(f"Unhandled error in {request.method} {request.path}")
        return web.json_response(
            {"success": False, "error": str(exc) or "Internal server error"}, status=500
        )


@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    connection_manager = _chat_app(request).connection_manager
    return web.json_response(
        {"status": "ok", "connectedServers": len(connection_manager.list_connected_ids())}
    )


# Chat


@routes.post("/api/chat")
async def chat(request: web.Request) -> web.StreamResponse:
    body = await _json_body(request)
    orchestrator = _chat_app(request).orchestrator

    turn = orchestrator.start_turn(
        body.get("messages"), use_tools=bool(body.get("useMcpTools", False))
    )

    async with orchestrator.run_turn(turn):
        async with aclosing(turn.events()) as events:
            first = await anext(events, None)
            if isinstance(first, ErrorEvent) and first.code == ErrorCode.RATE_LIMIT:
                return web.json_response(
                    {"success": False, "error": first.message, "code": first.code.value},
                    status=429,
                )

            response = web.StreamResponse(
                headers={
                    "Content-Type": NDJSON_CONTENT_TYPE,
                    "Cache-Control": "no-cache",
                    "X-Turn-Id": turn.id,
                }
            )
            await response.prepare(request)
            try:
                if first is not None:
                    await response.write(encode_event(first))
                async for event in events:
                    await response.write(encode_event(event))
                await response.write_eof()
            except ConnectionResetError:
                logger.info(f"Turn {turn.id}: client disconnected")
                turn.cancel()
            return response


@routes.get("/api/chat/{turn_id}")
async def chat_status(request: web.Request) -> web.Response:
    turn_id = request.match_info["turn_id"]
    state = _chat_app(request).orchestrator.status(turn_id)
    if state is None:
        raise ValidationError(f"Unknown turn: {turn_id}")
    return _envelope(ApiResponse.ok({"turnId": turn_id, "state": state.value}))


@routes.post("/api/chat/{turn_id}/cancel")
async def chat_cancel(request: web.Request) -> web.Response:
    turn_id = request.match_info["turn_id"]
    if not _chat_app(request).orchestrator.cancel_turn(turn_id):
        raise ValidationError(f"Unknown turn: {turn_id}")
    return _envelope(ApiResponse.ok())


# MCP connections


@routes.post("/api/mcp/connect")
async def mcp_connect(request: web.Request) -> web.Response:
    body = await _json_body(request)
    service = _chat_app(request).mcp_service
    # A bare {"serverId": ...} connects a registered descriptor
    if set(body) == {"serverId"}:
        return _envelope(await service.connect(body["serverId"]))
    return _envelope(await service.connect(body))


@routes.post("/api/mcp/disconnect")
async def mcp_disconnect(request: web.Request) -> web.Response:
    body = await _json_body(request)
    return _envelope(await _chat_app(request).mcp_service.disconnect(body.get("serverId")))


@routes.get("/api/mcp/status")
async def mcp_status(request: web.Request) -> web.Response:
    return _envelope(await _chat_app(request).mcp_service.connected_ids())


@routes.get("/api/mcp/servers/{server_id}/status")
async def mcp_server_status(request: web.Request) -> web.Response:
    return _envelope(await _chat_app(request).mcp_service.status(request.match_info["server_id"]))


# Capabilities


@routes.get("/api/mcp/servers/{server_id}/tools")
async def mcp_tools(request: web.Request) -> web.Response:
    server_id = _require_connected(request)
    return _envelope(await _chat_app(request).mcp_service.list_tools(server_id))


@routes.post("/api/mcp/servers/{server_id}/tools/execute")
async def mcp_execute_tool(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if not body.get("toolName"):
        raise ValidationError("Tool name is required")
    server_id = _require_connected(request)
    return _envelope(
        await _chat_app(request).mcp_service.execute_tool(
            server_id, body["toolName"], body.get("arguments")
        )
    )


@routes.get("/api/mcp/servers/{server_id}/prompts")
async def mcp_prompts(request: web.Request) -> web.Response:
    server_id = _require_connected(request)
    return _envelope(await _chat_app(request).mcp_service.list_prompts(server_id))


@routes.post("/api/mcp/servers/{server_id}/prompts/execute")
async def mcp_get_prompt(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if not body.get("promptName"):
        raise ValidationError("Prompt name is required")
    server_id = _require_connected(request)
    return _envelope(
        await _chat_app(request).mcp_service.get_prompt(
            server_id, body["promptName"], body.get("arguments")
        )
    )


@routes.get("/api/mcp/servers/{server_id}/resources")
async def mcp_resources(request: web.Request) -> web.Response:
    server_id = _require_connected(request)
    return _envelope(await _chat_app(request).mcp_service.list_resources(server_id))


@routes.post("/api/mcp/servers/{server_id}/resources/read")
async def mcp_read_resource(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if not body.get("uri"):
        raise ValidationError("Resource URI is required")
    server_id = _require_connected(request)
    return _envelope(await _chat_app(request).mcp_service.read_resource(server_id, body["uri"]))


# Descriptors


@routes.get("/api/mcp/descriptors")
async def descriptors_list(request: web.Request) -> web.Response:
    store = _chat_app(request).descriptor_store
    return _envelope(ApiResponse.ok(store.list_descriptors()))


@routes.get("/api/mcp/descriptors/export")
async def descriptors_export(request: web.Request) -> web.Response:
    store = _chat_app(request).descriptor_store
    return web.Response(text=store.export_json(), content_type="application/json")


@routes.post("/api/mcp/descriptors/import")
async def descriptors_import(request: web.Request) -> web.Response:
    body = await _json_body(request)
    imported = _chat_app(request).descriptor_store.import_bundle(body)
    return _envelope(ApiResponse.ok(imported))


def create_app(chat_app: "ChatBridgeApp") -> web.Application:
    """
    Build the aiohttp application for an initialized ChatBridgeApp.
    """
    app = web.Application(middlewares=[error_middleware])
    app[APP_KEY] = chat_app
    app.add_routes(routes)
    return app
