"""Tool Execution Service boundary and its MCP implementation.

Tools are exposed by MCP servers launched over stdio.  Each call opens a
short-lived client session, the same way the discovery pass does, so no
server process outlives a single request.
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

_log = logging.getLogger(__name__)


class ToolNotFoundError(LookupError):
    """No registered server exposes the requested action."""


class ToolInvocationError(RuntimeError):
    """The tool server reported the call as an error."""


class ToolService(ABC):
    """Abstract interface for invoking named tools."""

    @abstractmethod
    async def invoke(self, action: str, parameters: dict) -> Any:
        """Call ``action`` with ``parameters`` and return its raw result."""
        ...

    async def describe(self) -> dict[str, str]:
        """Return server name -> formatted tool signatures, for prompts."""
        return {}


class MCPToolService(ToolService):
    """Routes actions to the MCP server that exposes them.

    Args:
        server_paths: Mapping of server name -> server script path.  Each
                      script is launched with the current Python interpreter.
    """

    def __init__(self, server_paths: dict[str, Path]) -> None:
        self._server_paths = dict(server_paths)
        self._index: dict[str, str] | None = None
        self._catalog: dict[str, list[dict]] = {}

    @property
    def server_names(self) -> list[str]:
        return list(self._server_paths)

    async def discover(self) -> dict[str, list[dict]]:
        """List tools on every server and build the action -> server index."""
        index: dict[str, str] = {}
        catalog: dict[str, list[dict]] = {}
        for name, path in self._server_paths.items():
            try:
                tools = await _list_tools(path)
            except Exception as exc:  # noqa: BLE001
                _log.warning("Tool discovery failed for server %s: %s", name, exc)
                catalog[name] = []
                continue
            catalog[name] = tools
            for t in tools:
                if t["name"] in index:
                    _log.warning(
                        "Tool %r exposed by both %s and %s; using %s",
                        t["name"], index[t["name"]], name, index[t["name"]],
                    )
                    continue
                index[t["name"]] = name
        self._index = index
        self._catalog = catalog
        return catalog

    async def describe(self) -> dict[str, str]:
        if self._index is None:
            await self.discover()
        descriptions: dict[str, str] = {}
        for name, tools in self._catalog.items():
            if not tools:
                descriptions[name] = "  (unavailable)"
                continue
            lines = []
            for t in tools:
                params = ", ".join(
                    f"{p['name']}: {p['type']}{'?' if not p['required'] else ''}"
                    for p in t.get("parameters", [])
                )
                lines.append(f"  - {t['name']}({params}): {t['description']}")
            descriptions[name] = "\n".join(lines)
        return descriptions

    async def invoke(self, action: str, parameters: dict) -> Any:
        if self._index is None:
            await self.discover()
        server = self._index.get(action)
        if server is None:
            raise ToolNotFoundError(
                f"Unknown tool '{action}'. Known tools: {sorted(self._index)}"
            )
        _log.debug("Calling %s.%s(%s)", server, action, parameters)
        return await _call_tool(self._server_paths[server], action, parameters)


# ── MCP protocol helpers ──────────────────────────────────────────────────────


def _server_params(server_path: Path):
    from mcp import StdioServerParameters

    return StdioServerParameters(command=sys.executable, args=[str(server_path)])


async def _list_tools(server_path: Path) -> list[dict]:
    """Connect to an MCP server via stdio and list its tools with parameter info."""
    from mcp import ClientSession
    from mcp.client.stdio import stdio_client

    async with stdio_client(_server_params(server_path)) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            result = await session.list_tools()
            tools = []
            for t in result.tools:
                schema = t.inputSchema or {}
                required = set(schema.get("required", []))
                tools.append({
                    "name": t.name,
                    "description": t.description or "",
                    "parameters": [
                        {
                            "name": k,
                            "type": v.get("type", "any"),
                            "required": k in required,
                        }
                        for k, v in schema.get("properties", {}).items()
                    ],
                })
            return tools


async def _call_tool(server_path: Path, tool_name: str, args: dict) -> Any:
    """Connect to an MCP server via stdio, call a tool and decode its content."""
    from mcp import ClientSession
    from mcp.client.stdio import stdio_client

    async with stdio_client(_server_params(server_path)) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            result = await session.call_tool(tool_name, args)
            content = _extract_content(result.content)
            if getattr(result, "isError", False):
                raise ToolInvocationError(
                    content if isinstance(content, str) else json.dumps(content)
                )
            return content


def _extract_content(content: list[Any]) -> Any:
    """Decode MCP result content.

    A single text item holding JSON is decoded; several items are returned
    as a list of decoded items.
    """
    decoded = [_maybe_json(getattr(item, "text", str(item))) for item in content]
    if not decoded:
        return ""
    return decoded[0] if len(decoded) == 1 else decoded


def _maybe_json(text: str) -> Any:
    stripped = text.strip()
    if stripped[:1] in ("[", "{"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            pass
    return text
