from __future__ import annotations

import json
import logging
import os
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from ragrelay.errors import ToolMisconfiguredError

logger = logging.getLogger(__name__)

_TAVILY_BASE_URL = "https://api.tavily.com"
_PERPLEXITY_BASE_URL = "https://api.perplexity.ai"
_PERPLEXITY_MODEL = "sonar"
_HTTP_TIMEOUT_SECONDS = 30.0

ToolHandler = Callable[..., Awaitable[str]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    display_name: str
    description: str
    handler: ToolHandler
    required_env: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()

    def missing_env(self) -> list[str]:
        return [name for name in self.required_env if not os.getenv(name, "").strip()]

    @property
    def misconfigured_message(self) -> str:
        env_list = " and ".join(self.required_env)
        return (
            f"The {self.display_name} tool is not properly configured. "
            f"Please make sure {env_list} is set in your environment variables."
        )


@dataclass(frozen=True)
class ToolResolution:
    enabled: list[str] = field(default_factory=list)
    misconfigured: list[ToolMisconfiguredError] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)


class ToolRegistry:
    """Name -> tool table resolved once at startup."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool {spec.name!r} is already registered")
        self._specs[spec.name] = spec

    def names(self) -> list[str]:
        return sorted(self._specs)

    def get(self, name: str) -> ToolSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise KeyError(f"Unknown tool {name!r}. Available tools: {self.names()}") from None

    def resolve(self, names: Iterable[str]) -> ToolResolution:
        resolution = ToolResolution()
        for name in sorted(set(names)):
            spec = self._specs.get(name)
            if spec is None:
                logger.warning("requested tool is not registered tool=%s", name)
                resolution.unknown.append(name)
                continue
            if spec.missing_env():
                resolution.misconfigured.append(
                    ToolMisconfiguredError(spec.name, spec.misconfigured_message)
                )
                continue
            resolution.enabled.append(name)
        return resolution

    def describe_failure(self, error_text: str) -> str | None:
        """Map a raw backend error mentioning a tool to its user-readable message."""
        lowered = error_text.lower()
        for spec in self._specs.values():
            needles = (spec.name.lower(), *(k.lower() for k in spec.keywords))
            if any(needle in lowered for needle in needles):
                return spec.misconfigured_message
        return None


# ---------------------------------------------------------------------------
# Built-in web tools
# ---------------------------------------------------------------------------


def _bearer(env_name: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {os.getenv(env_name, '').strip()}"}


async def _post_json(
    base_url: str, path: str, *, headers: dict[str, str], payload: dict[str, Any]
) -> Any:
    async with httpx.AsyncClient(base_url=base_url, timeout=_HTTP_TIMEOUT_SECONDS) as client:
        response = await client.post(path, headers=headers, json=payload)
        response.raise_for_status()
        return response.json()


async def tavily_search(query: str, max_results: int = 5) -> str:
    """Search the web with Tavily and return ranked results with URLs and snippets."""
    data = await _post_json(
        _TAVILY_BASE_URL,
        "/search",
        headers=_bearer("TAVILY_API_KEY"),
        payload={"query": query, "max_results": max(1, min(max_results, 20))},
    )
    results = [
        {"title": item.get("title"), "url": item.get("url"), "content": item.get("content")}
        for item in data.get("results", [])
    ]
    return json.dumps({"query": query, "results": results})


async def tavily_extract(urls: list[str]) -> str:
    """Extract the readable content of one or more web pages with Tavily."""
    data = await _post_json(
        _TAVILY_BASE_URL,
        "/extract",
        headers=_bearer("TAVILY_API_KEY"),
        payload={"urls": urls},
    )
    results = [
        {"url": item.get("url"), "raw_content": item.get("raw_content")}
        for item in data.get("results", [])
    ]
    return json.dumps({"results": results, "failed_results": data.get("failed_results", [])})


async def perplexity_search(query: str) -> str:
    """Ask Perplexity for a web-grounded answer with citations."""
    data = await _post_json(
        _PERPLEXITY_BASE_URL,
        "/chat/completions",
        headers=_bearer("PERPLEXITY_API_KEY"),
        payload={"model": _PERPLEXITY_MODEL, "messages": [{"role": "user", "content": query}]},
    )
    choices = data.get("choices") or [{}]
    content = (choices[0].get("message") or {}).get("content", "")
    return json.dumps({"answer": content, "citations": data.get("citations", [])})


BUILTIN_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="tavily_search",
        display_name="Tavily Search",
        description="Search the web for current information.",
        handler=tavily_search,
        required_env=("TAVILY_API_KEY",),
        keywords=("tavily",),
    ),
    ToolSpec(
        name="tavily_extract",
        display_name="Tavily Extract",
        description="Extract page content from URLs.",
        handler=tavily_extract,
        required_env=("TAVILY_API_KEY",),
        keywords=("tavily",),
    ),
    ToolSpec(
        name="perplexity_search",
        display_name="Perplexity Search",
        description="Get a web-grounded answer with citations.",
        handler=perplexity_search,
        required_env=("PERPLEXITY_API_KEY",),
        keywords=("perplexity",),
    ),
)


def default_tool_registry() -> ToolRegistry:
    return ToolRegistry(BUILTIN_TOOLS)
