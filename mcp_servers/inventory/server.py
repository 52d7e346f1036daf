"""Product inventory MCP server (backs the sales ``inventory.query`` tool)."""

import json
import re
from pathlib import Path

from mcp.server.fastmcp import FastMCP

_DATA_DIR = Path(__file__).resolve().parent / "data"
_PRODUCTS_PATH = _DATA_DIR / "products.json"

_MAX_PRICE_PATTERN = re.compile(r"(?:under|below|less than|max(?:imum)?|up to|<=?)\s*\$?\s*(\d+(?:\.\d+)?)")
_WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9\-]*")


def _load_products() -> list[dict]:
    with open(_PRODUCTS_PATH, encoding="utf-8") as f:
        return json.load(f)


def _score(product: dict, words: list[str]) -> int:
    haystack = " ".join(
        [product["name"].lower(), product["category"], *product.get("tags", [])]
    )
    return sum(1 for w in words if w in haystack)


def search_products(query: str, limit: int = 5) -> list[dict]:
    """Rank products by keyword overlap, honouring an optional price ceiling."""
    text = (query or "").lower()
    max_price = None
    m = _MAX_PRICE_PATTERN.search(text)
    if m:
        max_price = float(m.group(1))

    words = [w.rstrip("s") for w in _WORD_PATTERN.findall(text) if len(w) > 2]
    ranked = []
    for product in _load_products():
        if max_price is not None and product["price"] > max_price:
            continue
        score = _score(product, words)
        if score > 0 or not words:
            ranked.append((score, product))
    ranked.sort(key=lambda pair: (-pair[0], pair[1]["price"]))
    return [
        {**product, "in_stock": product["stock"] > 0}
        for _, product in ranked[:limit]
    ]


mcp = FastMCP("Product Inventory", json_response=True)


@mcp.tool()
def query_inventory(query: str) -> str:
    """Find products matching a natural language query (e.g. "gaming laptop under 1600")."""
    matches = search_products(query)
    return json.dumps({"query": query, "items": matches}, indent=2)


if __name__ == "__main__":
    mcp.run(transport="stdio")
