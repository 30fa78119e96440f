import json
from typing import Any
from urllib.parse import urlparse

import httpx

from open_core.errors import ToolExecutionError
from open_core.tool import FetchMetadata, ToolContext, ToolResult
from open_core.tools.web.html_text import html_to_document

_DEFAULT_MAX_CHARS = 50_000
_MAX_RESPONSE_BYTES = 5_000_000
_TIMEOUT_SECONDS = 30
_MAX_REDIRECTS = 5

_HEADERS = {
    "User-Agent": "open-core/0.1",
    "Accept": "text/html,application/xhtml+xml,application/json,text/plain;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


class WebFetchTool:
    def __init__(self, client_factory=None):
        self._client_factory = client_factory or _default_client

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch a URL and return its content as readable text. HTML is converted to "
            "markdown-style text, JSON is pretty-printed. GET requests only."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The HTTP or HTTPS URL to fetch",
                },
                "max_chars": {
                    "type": "integer",
                    "minimum": 1,
                    "description": f"Maximum characters of content to return (default {_DEFAULT_MAX_CHARS})",
                },
            },
            "required": ["url"],
        }

    @property
    def permission(self) -> str:
        return "network"

    @property
    def is_mutating(self) -> bool:
        return False

    def predict_touched_paths(self, tool_input: dict[str, Any]) -> list[str]:
        return []

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
        url: str = tool_input["url"]
        max_chars = int(tool_input.get("max_chars", _DEFAULT_MAX_CHARS))

        if urlparse(url).scheme not in ("http", "https"):
            raise ToolExecutionError("URL must use http or https scheme", tool_name=self.name)

        try:
            async with self._client_factory() as client:
                response = await client.get(url)
        except httpx.TimeoutException as ex:
            raise ToolExecutionError(f"Request timed out after {_TIMEOUT_SECONDS} seconds", tool_name=self.name) from ex
        except httpx.TooManyRedirects as ex:
            raise ToolExecutionError(f"Too many redirects (max {_MAX_REDIRECTS})", tool_name=self.name) from ex
        except httpx.HTTPError as ex:
            raise ToolExecutionError(f"Request failed: {ex}", tool_name=self.name) from ex

        if response.status_code >= 400:
            raise ToolExecutionError(f"HTTP {response.status_code} fetching {url}", tool_name=self.name)
        if len(response.content) > _MAX_RESPONSE_BYTES:
            raise ToolExecutionError(
                f"Response too large ({len(response.content):,} bytes, max {_MAX_RESPONSE_BYTES:,})",
                tool_name=self.name,
            )

        content_type = response.headers.get("content-type", "")
        title = ""
        if "text/html" in content_type or "application/xhtml" in content_type:
            document = html_to_document(response.text)
            title = document.title
            content = document.text
        elif "application/json" in content_type:
            try:
                content = json.dumps(response.json(), indent=2)
            except ValueError:
                content = response.text
        else:
            content = response.text

        original_length = len(content)
        truncated = original_length > max_chars
        if truncated:
            content = content[:max_chars] + f"\n\n[Content truncated at {max_chars:,} of {original_length:,} characters]"

        header = [f"URL: {url}"]
        final_url = str(response.url)
        if final_url != url:
            header.append(f"Final URL: {final_url}")
        if title:
            header.append(f"Title: {title}")
        header.append(f"Content-Type: {content_type}")

        return ToolResult(
            output="\n".join(header) + "\n\n" + content,
            title=title or url,
            metadata=FetchMetadata(
                url=final_url,
                status_code=response.status_code,
                content_type=content_type,
                truncated=truncated,
            ),
        )


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers=_HEADERS,
        timeout=_TIMEOUT_SECONDS,
        follow_redirects=True,
        max_redirects=_MAX_REDIRECTS,
    )
