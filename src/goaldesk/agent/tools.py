import json
import logging
import math
import os
import re
import shlex
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from ..settings import Settings, get_settings
from .contract import AGENT_SALES, AGENT_SUPPORT, ToolRequest, ToolResult

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]

TOOL_MATH_EVALUATE = "math.evaluate"
TOOL_INVENTORY_QUERY = "inventory.query"
TOOL_KNOWLEDGE_BASE_SEARCH = "knowledge_base.search"


@dataclass(frozen=True)
class ToolSpec:
    """A tool offered to a specialist model."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def function_name(self) -> str:
        # OpenAI-compatible APIs only accept [a-zA-Z0-9_-] in function names.
        return self.name.replace(".", "_")

    def to_function_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.function_name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _string_param(name: str, description: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {name: {"type": "string", "description": description}},
        "required": [name],
    }


_MATH_TOOL = ToolSpec(
    name=TOOL_MATH_EVALUATE,
    description="Evaluate a mathematical expression.",
    parameters=_string_param("expression", "Expression to evaluate"),
)
_INVENTORY_TOOL = ToolSpec(
    name=TOOL_INVENTORY_QUERY,
    description="Query product inventory, stock, and price by user constraints.",
    parameters=_string_param("query", "Natural language query"),
)
_KNOWLEDGE_BASE_TOOL = ToolSpec(
    name=TOOL_KNOWLEDGE_BASE_SEARCH,
    description="Search troubleshooting knowledge base and return evidence snippets.",
    parameters=_string_param("query", "Troubleshooting query"),
)


@lru_cache(maxsize=None)
def tools_for_agent(agent_type: str) -> Tuple[ToolSpec, ...]:
    """Return the tools a specialist may request (cached)."""
    if agent_type == AGENT_SALES:
        return (_INVENTORY_TOOL, _MATH_TOOL)
    if agent_type == AGENT_SUPPORT:
        return (_KNOWLEDGE_BASE_TOOL, _MATH_TOOL)
    return ()


# ---------------------------------------------------------------------------
# math.evaluate
# ---------------------------------------------------------------------------

# Digits, whitespace, decimal points, operators and parentheses.
_MATH_EXPRESSION_PATTERN = re.compile(r"^[\d\s+\-*/%^().]+$")
MAX_EXPRESSION_LENGTH = 1000
# Nested parentheses, unary signs and '^' chains all count towards this.
MAX_EXPRESSION_DEPTH = 100


class MathError(ValueError):
    """The expression is malformed or cannot be evaluated."""


def validate_math_expression(expression: str) -> None:
    if not expression:
        raise MathError("expression is empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise MathError(f"expression is longer than {MAX_EXPRESSION_LENGTH} characters")
    if not _MATH_EXPRESSION_PATTERN.match(expression):
        raise MathError("expression contains invalid characters")
    balance = 0
    for ch in expression:
        if ch == "(":
            balance += 1
        elif ch == ")":
            balance -= 1
            if balance < 0:
                raise MathError("expression has unbalanced parentheses")
    if balance != 0:
        raise MathError("expression has unbalanced parentheses")


class _MathParser:
    """Recursive-descent evaluator.

    expr    := term (('+' | '-') term)*
    term    := power (('*' | '/' | '%') power)*
    power   := unary ('^' power)?
    unary   := ('+' | '-') unary | primary
    primary := '(' expr ')' | number
    """

    def __init__(self, text: str) -> None:
        self._text = text
        self._pos = 0
        self._depth = 0

    def parse(self) -> float:
        value = self._expr()
        self._skip_spaces()
        if self._pos < len(self._text):
            raise MathError(f"unexpected token at position {self._pos}")
        return value

    def _skip_spaces(self) -> None:
        while self._pos < len(self._text) and self._text[self._pos].isspace():
            self._pos += 1

    def _match(self, ch: str) -> bool:
        self._skip_spaces()
        if self._pos < len(self._text) and self._text[self._pos] == ch:
            self._pos += 1
            return True
        return False

    def _expr(self) -> float:
        left = self._term()
        while True:
            if self._match("+"):
                left += self._term()
            elif self._match("-"):
                left -= self._term()
            else:
                return left

    def _term(self) -> float:
        left = self._power()
        while True:
            if self._match("*"):
                left *= self._power()
            elif self._match("/"):
                right = self._power()
                if right == 0:
                    raise MathError("division by zero")
                left /= right
            elif self._match("%"):
                right = self._power()
                if right == 0:
                    raise MathError("modulo by zero")
                left = math.fmod(left, right)
            else:
                return left

    def _enter(self) -> None:
        self._depth += 1
        if self._depth > MAX_EXPRESSION_DEPTH:
            raise MathError(f"expression is nested deeper than {MAX_EXPRESSION_DEPTH} levels")

    def _power(self) -> float:
        self._enter()
        try:
            left = self._unary()
            if self._match("^"):
                right = self._power()
                try:
                    return math.pow(left, right)
                except (OverflowError, ValueError) as e:
                    raise MathError(f"cannot evaluate power: {e}") from e
            return left
        finally:
            self._depth -= 1

    def _unary(self) -> float:
        self._enter()
        try:
            if self._match("+"):
                return self._unary()
            if self._match("-"):
                return -self._unary()
            return self._primary()
        finally:
            self._depth -= 1

    def _primary(self) -> float:
        if self._match("("):
            value = self._expr()
            if not self._match(")"):
                raise MathError(f"missing closing parenthesis at position {self._pos}")
            return value
        return self._number()

    def _number(self) -> float:
        self._skip_spaces()
        start = self._pos
        seen_digit = seen_dot = False
        while self._pos < len(self._text):
            ch = self._text[self._pos]
            if ch.isdigit():
                seen_digit = True
            elif ch == ".":
                if seen_dot:
                    raise MathError(f"invalid number format at position {self._pos}")
                seen_dot = True
            else:
                break
            self._pos += 1
        if not seen_digit:
            raise MathError(f"expected number at position {start}")
        return float(self._text[start:self._pos])


def evaluate_math_expression(expression: str) -> float:
    expression = (expression or "").strip()
    validate_math_expression(expression)
    try:
        return _MathParser(expression).parse()
    except RecursionError as e:
        raise MathError("expression is nested too deeply") from e


def execute_math_tool(args: Dict[str, Any]) -> ToolResult:
    """Run math.evaluate; bad input is reported in ``ToolResult.error``."""
    raw = args.get("expression")
    if raw is None:
        return ToolResult(tool=TOOL_MATH_EVALUATE, error="expression is required")
    if not isinstance(raw, str):
        return ToolResult(tool=TOOL_MATH_EVALUATE, error="expression must be a string")
    expression = raw.strip()
    try:
        result = evaluate_math_expression(expression)
    except MathError as e:
        return ToolResult(tool=TOOL_MATH_EVALUATE, error=str(e))
    return ToolResult(
        tool=TOOL_MATH_EVALUATE,
        result={"expression": expression, "result": result},
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class McpRoute:
    """Where a catalog tool is served: an MCP stdio command and its tool name."""

    server: str
    command: str
    tool_name: str


def mcp_routes_from_settings(settings: Optional[Settings] = None) -> Dict[str, McpRoute]:
    """Build routes for the tools whose MCP server command is configured."""
    settings = settings or get_settings()
    routes: Dict[str, McpRoute] = {}
    if settings.mcp_inventory_cmd:
        routes[TOOL_INVENTORY_QUERY] = McpRoute(
            server="inventory",
            command=settings.mcp_inventory_cmd,
            tool_name="query_inventory",
        )
    if settings.mcp_knowledge_base_cmd:
        routes[TOOL_KNOWLEDGE_BASE_SEARCH] = McpRoute(
            server="knowledge_base",
            command=settings.mcp_knowledge_base_cmd,
            tool_name="search_knowledge_base",
        )
    return routes


class LocalToolGateway:
    """Executes tool requests one at a time for a given agent.

    ``math.evaluate`` runs in-process; other tools go to their MCP server when
    one is configured. Failures become ``ToolResult.error`` so the specialist
    can still finalize.
    """

    def __init__(self, routes: Optional[Dict[str, McpRoute]] = None) -> None:
        self._routes = dict(routes or {})

    async def execute(self, agent_type: str, requests: List[ToolRequest]) -> List[ToolResult]:
        results: List[ToolResult] = []
        for req in requests:
            results.append(await self._execute_one(agent_type, req))
        return results

    async def _execute_one(self, agent_type: str, req: ToolRequest) -> ToolResult:
        allowed = {t.name for t in tools_for_agent(agent_type)}
        if req.tool not in allowed:
            return ToolResult(
                tool=req.tool,
                error=f"tool={req.tool} is unavailable for agent={agent_type}",
            )

        logger.info("Executing tool: %s (agent=%s)", req.tool, agent_type)
        if req.tool == TOOL_MATH_EVALUATE:
            return execute_math_tool(req.args or {})

        route = self._routes.get(req.tool)
        if route is None:
            return ToolResult(
                tool=req.tool,
                error=f"tool={req.tool} is unavailable for agent={agent_type}",
            )
        try:
            result = await self._call_mcp_tool(route, req.args or {})
        except (McpError, OSError, ConnectionError, TimeoutError, ValueError) as e:
            logger.error("Error executing tool %s on MCP server %s: %s", req.tool, route.server, e)
            return ToolResult(tool=req.tool, error=f"Error: {e}")
        except ExceptionGroup as eg:
            # The stdio transport runs in an anyio task group and wraps failures.
            message = "; ".join(str(e) for e in _leaf_exceptions(eg))
            logger.error("Error executing tool %s on MCP server %s: %s", req.tool, route.server, message)
            return ToolResult(tool=req.tool, error=f"Error: {message}")
        return ToolResult(tool=req.tool, result=result)

    async def _call_mcp_tool(self, route: McpRoute, arguments: Dict[str, Any]) -> Any:
        cmd_parts = shlex.split(route.command)
        if not cmd_parts:
            raise ValueError(f"invalid MCP command for '{route.server}': {route.command!r}")

        server_params = StdioServerParameters(
            command=cmd_parts[0],
            args=cmd_parts[1:],
            env={"PYTHONPATH": str(PROJECT_ROOT), **os.environ},
        )
        async with stdio_client(server_params) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                logger.info("Calling MCP tool %s on server %s", route.tool_name, route.server)
                result = await session.call_tool(route.tool_name, arguments)

        if result.isError:
            text = result.content[0].text if result.content else "tool error"
            raise ValueError(text)
        if not result.content:
            return None
        text = getattr(result.content[0], "text", "") or ""
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text


def _leaf_exceptions(group: BaseExceptionGroup) -> List[BaseException]:
    leaves: List[BaseException] = []
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            leaves.extend(_leaf_exceptions(exc))
        else:
            leaves.append(exc)
    return leaves


def tool_name_from_function(agent_type: str, function_name: str) -> str:
    """Map a function name returned by the model back to its catalog tool name.

    Unknown names are returned unchanged so the caller can reject them.
    """
    for spec in tools_for_agent(agent_type):
        if function_name in (spec.function_name, spec.name):
            return spec.name
    return function_name


def build_tool_gateway(settings: Optional[Settings] = None) -> LocalToolGateway:
    routes = mcp_routes_from_settings(settings)
    logger.info("Tool gateway ready: mcp routes=%s", ", ".join(sorted(routes)) or "none")
    return LocalToolGateway(routes)
