"""Remote document reader backed by the Jina reader API (r.jina.ai)."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel

from tiny_agent.config import settings
from tiny_agent.errors import ConfigError, ToolExecutionError
from tiny_agent.tools import Tool, parse_parameters

logger = logging.getLogger(__name__)

JINA_READER_PREFIX = "https://r.jina.ai/"


class JinaReaderParams(BaseModel):
    url: str
    no_cache: bool | None = None


class JinaDocument(BaseModel):
    title: str | None = None
    url_source: str | None = None
    published_time: str | None = None
    markdown: str | None = None
    raw: str


def parse_jina_response(raw: str) -> JinaDocument:
    """Split the reader's plain-text envelope into header fields and markdown body."""
    title = url_source = published_time = None
    markdown_lines: list[str] = []
    in_markdown = False

    for line in raw.splitlines():
        if line.startswith("Title: "):
            title = line[len("Title: "):].strip()
        elif line.startswith("URL Source: "):
            url_source = line[len("URL Source: "):].strip()
        elif line.startswith("Published Time: "):
            published_time = line[len("Published Time: "):].strip()
        elif line.startswith("Markdown Content:"):
            in_markdown = True
            rest = line[len("Markdown Content:"):].lstrip()
            if rest:
                markdown_lines.append(rest)
        elif in_markdown:
            markdown_lines.append(line)

    return JinaDocument(
        title=title,
        url_source=url_source,
        published_time=published_time,
        markdown="\n".join(markdown_lines) if markdown_lines else None,
        raw=raw,
    )


class JinaReaderTool(Tool):
    name = "jina_reader"
    description = "Fetch markdown content for a URL using the Jina reader API"

    def __init__(self, api_key: str, timeout: float = 30.0,
                 http_client: httpx.AsyncClient | None = None) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_env(cls) -> JinaReaderTool:
        if not settings.jina_api_key:
            raise ConfigError("Missing JINA_API_KEY env var")
        return cls(settings.jina_api_key)

    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "Fully qualified URL to fetch"},
                "no_cache": {
                    "type": "boolean",
                    "description": "Set true to bypass cached snapshot",
                },
            },
            "required": ["url"],
        }

    async def execute(self, arguments: Any) -> dict[str, Any]:
        params = parse_parameters(JinaReaderParams, arguments)
        target = params.url if params.url.startswith(JINA_READER_PREFIX) else JINA_READER_PREFIX + params.url

        headers = {"Authorization": f"Bearer {self._api_key}"}
        if params.no_cache:
            headers["Cache-Control"] = "no-cache"

        logger.debug("Fetching %s", target)
        try:
            if self._http_client is not None:
                response = await self._http_client.get(target, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(target, headers=headers)
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Failed to call Jina reader: {e}") from e

        if not response.is_success:
            raise ToolExecutionError(f"Jina reader returned status {response.status_code}")

        return parse_jina_response(response.text).model_dump()
