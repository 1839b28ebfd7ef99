from __future__ import annotations

import asyncio
import re
import urllib.request
from html.parser import HTMLParser
from typing import Any, Mapping
from urllib.parse import urlparse

from ..base import BaseTool, ToolContext, ToolOutput, ToolSpec
from ...errors import ExecutionError, ValidationError


class _HTMLTextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs):  # type: ignore[override]
        if tag.lower() in {"script", "style", "noscript"}:
            self._skip_depth += 1

    def handle_endtag(self, tag: str):  # type: ignore[override]
        if tag.lower() in {"script", "style", "noscript"} and self._skip_depth > 0:
            self._skip_depth -= 1

    def handle_data(self, data: str):  # type: ignore[override]
        if self._skip_depth > 0:
            return
        text = data.strip()
        if text:
            self._parts.append(text)

    def text(self) -> str:
        joined = "\n".join(self._parts)
        # collapse excessive blank lines
        joined = re.sub(r"\n{3,}", "\n\n", joined)
        return joined.strip()


def html_to_text(html: str) -> str:
    parser = _HTMLTextExtractor()
    parser.feed(html)
    return parser.text()


def _decode(raw: bytes) -> str:
    for enc in ("utf-8", "utf-8-sig"):
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("latin-1")


class WebFetchTool(BaseTool):
    """Fetch a URL and return readable text.

    Read-only from the workspace's point of view; gated under the "net" class.
    """

    spec = ToolSpec(
        name="webfetch",
        description="Fetch a URL and return its text content (HTML will be converted to plain text).",
        parameters={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to fetch."},
                "timeout": {"type": "integer", "minimum": 1, "description": "Timeout seconds (default 15)."},
                "max_chars": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Max characters to return (default 12000).",
                },
                "headers": {
                    "type": "object",
                    "description": "Optional HTTP headers.",
                    "additionalProperties": {"type": "string"},
                },
            },
            "required": ["url"],
        },
        permission_key="net",
    )

    def check_preconditions(self, args: Mapping[str, Any], cwd: str) -> None:
        parsed = urlparse(str(args["url"]).strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationError(f"Only absolute http(s) URLs are supported: {args['url']}")

    def permission_target(self, args: Mapping[str, Any], cwd: str) -> str:
        return urlparse(str(args["url"]).strip()).netloc.lower()

    def describe_effect(self, args: Mapping[str, Any], cwd: str) -> str:
        return f"Fetch {args['url']}"

    def _fetch(self, url: str, headers: dict[str, str], timeout: int) -> tuple[bytes, str]:
        req = urllib.request.Request(url, headers={"User-Agent": "pyharness/0.1", **headers})
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read(), (resp.headers.get("Content-Type") or "").lower()

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        url = str(args["url"]).strip()
        timeout = int(args.get("timeout") or 15)
        max_chars = int(args.get("max_chars") or 12000)
        headers = args.get("headers") or {}

        try:
            raw, content_type = await ctx.cancel.guard(asyncio.to_thread(self._fetch, url, headers, timeout))
        except OSError as e:
            raise ExecutionError(f"webfetch failed: {e}") from e

        text = _decode(raw)
        if "html" in content_type or "<html" in text[:2000].lower():
            text = html_to_text(text)

        truncated = len(text) > max_chars
        if truncated:
            head = text[: max_chars // 2]
            tail = text[-max_chars // 2 :]
            text = head + "\n\n... (truncated) ...\n\n" + tail

        return ToolOutput(text, payload={"url": url, "content_type": content_type, "bytes": len(raw), "truncated": truncated})
