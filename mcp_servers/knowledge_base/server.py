"""Troubleshooting knowledge base MCP server (backs the support ``knowledge_base.search`` tool)."""

import json
import re
from pathlib import Path

from mcp.server.fastmcp import FastMCP

_DATA_DIR = Path(__file__).resolve().parent / "data"
_ARTICLES_PATH = _DATA_DIR / "articles.json"

_WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9\-]*")


def _load_articles() -> list[dict]:
    with open(_ARTICLES_PATH, encoding="utf-8") as f:
        return json.load(f)


def search_articles(query: str, limit: int = 3) -> list[dict]:
    """Return the best-matching articles as evidence snippets."""
    words = {w for w in _WORD_PATTERN.findall((query or "").lower()) if len(w) > 2}
    if not words:
        return []

    ranked = []
    for article in _load_articles():
        vocabulary = set(article.get("tags", [])) | set(
            _WORD_PATTERN.findall(article["title"].lower())
        )
        score = len(words & vocabulary)
        if score:
            ranked.append((score, article))
    ranked.sort(key=lambda pair: (-pair[0], pair[1]["id"]))
    return [
        {"id": a["id"], "title": a["title"], "snippet": " ".join(a["steps"])}
        for _, a in ranked[:limit]
    ]


mcp = FastMCP("Troubleshooting Knowledge Base", json_response=True)


@mcp.tool()
def search_knowledge_base(query: str) -> str:
    """Search troubleshooting articles (e.g. "wifi keeps disconnecting")."""
    return json.dumps({"query": query, "results": search_articles(query)}, indent=2)


if __name__ == "__main__":
    mcp.run(transport="stdio")
