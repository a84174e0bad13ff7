# /flowbot/workflows/templating.py

import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote

from flowbot.workflows.errors import ExternalAPIError, MissingTemplateVariableError

# `{{name}}` placeholder handling for api node requests, smart button actions
# and response templates, plus dotted-path lookups into JSON responses.

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")

Resolver = Callable[[str], Awaitable[Optional[str]]]


def placeholders(template: str) -> List[str]:
    """Distinct placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in PLACEHOLDER_PATTERN.findall(template or ""):
        if name not in seen:
            seen.append(name)
    return seen


def _substitute(template: str, values: Mapping[str, str], url_encode: bool) -> str:
    def replace(match):
        value = values[match.group(1)]
        return quote(value, safe="") if url_encode else value
    return PLACEHOLDER_PATTERN.sub(replace, template)


async def render_template(template: str, resolve: Resolver, url_encode: bool = False) -> str:
    """
    Fill every placeholder via `resolve`. A placeholder without a value raises
    MissingTemplateVariableError; a partially rendered string is never returned.
    """
    values: Dict[str, str] = {}
    for name in placeholders(template):
        value = await resolve(name)
        if value is None:
            raise MissingTemplateVariableError(name)
        values[name] = value
    return _substitute(template, values, url_encode)


async def render_value(value: Any, resolve: Resolver) -> Any:
    """Render placeholders inside every string of a JSON-like structure."""
    if isinstance(value, str):
        return await render_template(value, resolve)
    if isinstance(value, dict):
        return {k: await render_value(v, resolve) for k, v in value.items()}
    if isinstance(value, list):
        return [await render_value(v, resolve) for v in value]
    return value


def static_resolver(values: Mapping[str, Any]) -> Resolver:
    async def resolve(name: str) -> Optional[str]:
        value = values.get(name)
        return None if value is None else str(value)
    return resolve


def extract_field(payload: Any, path: Optional[str]) -> Any:
    """
    Walk a dotted path ('data.items.0.url') through dicts and lists.
    An empty path returns the payload itself.
    """
    if not path:
        return payload
    current = payload
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit() and -len(current) <= int(part) < len(current):
            current = current[int(part)]
        else:
            raise ExternalAPIError(f"Response has no field '{path}'")
    return current


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, indent=2)
    return str(value)


def render_response(template: str, payload: Any) -> str:
    """Fill a response template from fields of an API response ('Status: {{order.status}}')."""
    values = {name: stringify(extract_field(payload, name)) for name in placeholders(template)}
    return _substitute(template, values, url_encode=False)
