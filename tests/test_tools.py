from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import ErrorData

from goaldesk.agent.contract import ToolRequest
from goaldesk.agent.tools import (
    LocalToolGateway,
    McpRoute,
    MathError,
    evaluate_math_expression,
    execute_math_tool,
    mcp_routes_from_settings,
    tool_name_from_function,
    tools_for_agent,
)


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("1 + 2 * 3", 7.0),
        ("(1 + 2) * 3", 9.0),
        ("2 ^ 3 ^ 2", 512.0),
        ("-2 ^ 2", 4.0),
        ("10 % 4", 2.0),
        ("7 / 2", 3.5),
        ("- (3 - 5)", 2.0),
        ("1500 * 0.9", 1350.0),
    ],
)
def test_math_precedence(expression: str, expected: float) -> None:
    """Operators follow the usual precedence; ^ is right-associative."""
    assert evaluate_math_expression(expression) == pytest.approx(expected)


@pytest.mark.parametrize(
    "expression",
    ["", "1 / 0", "5 % 0", "(1 + 2", "1 + 2)", "2 + abc", "1..2", "3 +", "4 5"],
)
def test_math_errors(expression: str) -> None:
    """Malformed expressions and zero divisors raise MathError."""
    with pytest.raises(MathError):
        evaluate_math_expression(expression)


def test_execute_math_tool_reports_errors() -> None:
    """The math tool never raises; problems land in error."""
    ok = execute_math_tool({"expression": " 2 * 21 "})
    assert ok.result == {"expression": "2 * 21", "result": 42.0}
    assert execute_math_tool({}).error == "expression is required"
    assert execute_math_tool({"expression": 3}).error == "expression must be a string"
    assert "division by zero" in execute_math_tool({"expression": "1/0"}).error


@pytest.mark.parametrize(
    "expression",
    [
        "(" * 3000 + "1" + ")" * 3000,
        "-" * 3000 + "1",
        "(" * 200 + "1" + ")" * 200,
        "-" * 500 + "1",
        "2^" * 300 + "2",
    ],
)
def test_math_rejects_deep_or_long_expressions(expression: str) -> None:
    """Deeply nested or oversized expressions raise MathError, not RecursionError."""
    with pytest.raises(MathError):
        evaluate_math_expression(expression)
    assert execute_math_tool({"expression": expression}).error


def test_math_allows_moderate_nesting() -> None:
    """A few dozen nested parentheses still evaluate."""
    assert evaluate_math_expression("(" * 30 + "1 + 2" + ")" * 30) == 3.0
    assert evaluate_math_expression("- - - 4") == -4.0


@pytest.mark.asyncio
async def test_gateway_deep_math_expression_becomes_error() -> None:
    """The gateway returns an error result for a pathologically nested expression."""
    gateway = LocalToolGateway()
    req = ToolRequest(tool="math.evaluate", args={"expression": "(" * 3000 + "1" + ")" * 3000})
    results = await gateway.execute("sales", [req])
    assert results[0].error
    assert results[0].result is None


def test_catalog_per_agent() -> None:
    """Sales gets inventory, support gets the knowledge base, both get math."""
    assert [t.name for t in tools_for_agent("sales")] == ["inventory.query", "math.evaluate"]
    assert [t.name for t in tools_for_agent("support")] == ["knowledge_base.search", "math.evaluate"]
    assert tools_for_agent("planner") == ()
    schema = tools_for_agent("support")[0].to_function_schema()
    assert schema["function"]["name"] == "knowledge_base_search"
    assert schema["function"]["parameters"]["required"] == ["query"]


def test_tool_name_from_function() -> None:
    """Function names map back to dotted catalog names."""
    assert tool_name_from_function("sales", "inventory_query") == "inventory.query"
    assert tool_name_from_function("sales", "math.evaluate") == "math.evaluate"
    assert tool_name_from_function("sales", "knowledge_base_search") == "knowledge_base_search"


def test_mcp_routes_from_settings() -> None:
    """Only configured MCP commands produce routes."""
    settings = MagicMock(mcp_inventory_cmd="python mcp_servers/inventory/server.py", mcp_knowledge_base_cmd=None)
    routes = mcp_routes_from_settings(settings)
    assert list(routes) == ["inventory.query"]
    assert routes["inventory.query"].tool_name == "query_inventory"


@pytest.mark.asyncio
async def test_gateway_runs_math_and_rejects_unavailable_tools() -> None:
    """Math runs locally; tools outside the catalog or unrouted come back as errors."""
    gateway = LocalToolGateway()
    results = await gateway.execute(
        "sales",
        [
            ToolRequest(tool="math.evaluate", args={"expression": "3*4"}),
            ToolRequest(tool="knowledge_base.search", args={"query": "wifi"}),
            ToolRequest(tool="inventory.query", args={"query": "laptop"}),
        ],
    )
    assert results[0].result["result"] == 12.0
    assert "unavailable" in results[1].error
    assert "unavailable" in results[2].error
    assert [r.tool for r in results] == ["math.evaluate", "knowledge_base.search", "inventory.query"]


@pytest.mark.asyncio
async def test_gateway_forwards_to_mcp() -> None:
    """Routed tools call the MCP server and decode its JSON text."""
    route = McpRoute(server="inventory", command="python server.py", tool_name="query_inventory")
    gateway = LocalToolGateway({"inventory.query": route})
    with patch.object(gateway, "_call_mcp_tool", AsyncMock(return_value={"items": [1]})) as call:
        results = await gateway.execute("sales", [ToolRequest(tool="inventory.query", args={"query": "x"})])
    call.assert_awaited_once_with(route, {"query": "x"})
    assert results[0].result == {"items": [1]}
    assert results[0].error == ""


@pytest.mark.asyncio
async def test_gateway_mcp_failure_becomes_error() -> None:
    """An MCP connection failure does not raise."""
    route = McpRoute(server="inventory", command="python server.py", tool_name="query_inventory")
    gateway = LocalToolGateway({"inventory.query": route})
    with patch.object(gateway, "_call_mcp_tool", AsyncMock(side_effect=OSError("spawn failed"))):
        results = await gateway.execute("sales", [ToolRequest(tool="inventory.query")])
    assert results[0].error == "Error: spawn failed"
    assert results[0].result is None


@pytest.mark.asyncio
async def test_gateway_mcp_protocol_error_becomes_error() -> None:
    """A server that exits mid-call (McpError) yields an error result."""
    route = McpRoute(server="inventory", command="python server.py", tool_name="query_inventory")
    gateway = LocalToolGateway({"inventory.query": route})
    closed = McpError(ErrorData(code=-32000, message="Connection closed"))
    with patch.object(gateway, "_call_mcp_tool", AsyncMock(side_effect=closed)):
        results = await gateway.execute(
            "sales",
            [ToolRequest(tool="inventory.query"), ToolRequest(tool="math.evaluate", args={"expression": "1+1"})],
        )
    assert results[0].error == "Error: Connection closed"
    assert results[0].result is None
    assert results[1].result["result"] == 2.0


@pytest.mark.asyncio
async def test_gateway_task_group_failure_becomes_error() -> None:
    """Failures wrapped in an ExceptionGroup by the stdio transport yield an error result."""
    route = McpRoute(server="inventory", command="python server.py", tool_name="query_inventory")
    gateway = LocalToolGateway({"inventory.query": route})
    group = ExceptionGroup(
        "unhandled errors in a TaskGroup",
        [McpError(ErrorData(code=-32000, message="Connection closed"))],
    )
    with patch.object(gateway, "_call_mcp_tool", AsyncMock(side_effect=group)):
        results = await gateway.execute("sales", [ToolRequest(tool="inventory.query")])
    assert results[0].error == "Error: Connection closed"
    assert results[0].result is None


@pytest.mark.asyncio
async def test_call_mcp_tool_decodes_text_content() -> None:
    """_call_mcp_tool returns parsed JSON from the first text block."""
    route = McpRoute(server="inventory", command="python server.py", tool_name="query_inventory")
    session = MagicMock()
    session.initialize = AsyncMock()
    session.call_tool = AsyncMock(
        return_value=SimpleNamespace(isError=False, content=[SimpleNamespace(text='{"items": []}')])
    )
    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    stdio_cm = MagicMock()
    stdio_cm.__aenter__ = AsyncMock(return_value=("read", "write"))
    stdio_cm.__aexit__ = AsyncMock(return_value=False)

    with patch("goaldesk.agent.tools.stdio_client", return_value=stdio_cm) as stdio, patch(
        "goaldesk.agent.tools.ClientSession", return_value=session_cm
    ):
        result = await LocalToolGateway()._call_mcp_tool(route, {"query": "x"})

    assert result == {"items": []}
    params = stdio.call_args.args[0]
    assert params.command == "python"
    assert params.args == ["server.py"]
    session.call_tool.assert_awaited_once_with("query_inventory", {"query": "x"})
