"""HCL rendering helpers for permit-export."""

import json
import re
from typing import Any, Dict, List, Optional

_UNSAFE_ID_CHARS = re.compile(r'[^a-zA-Z0-9_]')

_HCL_ESCAPED_CHARS = re.compile(r'[\\"\x00-\x1f\x7f]')
_HCL_ESCAPES = {'\\': '\\\\', '"': '\\"', '\n': '\\n', '\r': '\\r', '\t': '\\t'}

# Matches escaped backslashes too, so "\\b" in the output is left alone.
_JSON_ESCAPE_SEQ = re.compile(r'\\(.)')
_JSON_ONLY_ESCAPES = {'b': '\\u0008', 'f': '\\u000c'}


class HCLExpression(str):
    """A raw HCL expression (reference, function call) emitted unquoted."""


def sanitize(*parts: Optional[str]) -> str:
    """Build a Terraform identifier from one or more free-form keys.

    Every character outside ``[A-Za-z0-9_]`` becomes ``_`` and the non-empty
    parts are joined with ``_``. Already-sanitized input is returned as is.
    """
    cleaned = [_UNSAFE_ID_CHARS.sub('_', part or '') for part in parts]
    return '_'.join(part for part in cleaned if part)


def make_unique_ids(ids: List[str]) -> List[str]:
    """Suffix repeated identifiers with _1, _2, ... keeping the first as is."""
    result = []
    seen: Dict[str, int] = {}
    for tf_id in ids:
        if tf_id in seen:
            seen[tf_id] += 1
            tf_id = f"{tf_id}_{seen[tf_id]}"
        else:
            seen[tf_id] = 0
        result.append(tf_id)
    return result


def reference(resource_type: str, tf_id: str, attribute: str = "") -> HCLExpression:
    """Reference to another block, e.g. permitio_resource.document.key."""
    ref = f"{resource_type}.{tf_id}"
    if attribute:
        ref += f".{attribute}"
    return HCLExpression(ref)


def _json_escape(match: "re.Match") -> str:
    # HCL has no \b or \f escapes.
    return _JSON_ONLY_ESCAPES.get(match.group(1), match.group(0))


def jsonencode(value: Any) -> HCLExpression:
    """Embed a JSON-like value as a jsonencode(...) call."""
    encoded = _JSON_ESCAPE_SEQ.sub(_json_escape, json.dumps(value, indent=2))
    encoded = encoded.replace('${', '$${').replace('%{', '%%{')
    return HCLExpression(f"jsonencode({encoded})")


def _escape_char(match: "re.Match") -> str:
    c = match.group(0)
    return _HCL_ESCAPES.get(c) or f"\\u{ord(c):04x}"


def hcl_string(value: str) -> str:
    """Escape and quote a string for HCL.

    Control characters without a short escape are written as \\uXXXX.
    """
    escaped = (_HCL_ESCAPED_CHARS.sub(_escape_char, value)
               .replace('${', '$${')
               .replace('%{', '%%{'))
    return f'"{escaped}"'


def hcl_value(value: Any, indent: int = 2) -> str:
    """Convert a Python value to HCL representation."""
    if isinstance(value, HCLExpression):
        return str(value)
    elif isinstance(value, bool):
        return "true" if value else "false"
    elif isinstance(value, (int, float)):
        return str(value)
    elif isinstance(value, str):
        return hcl_string(value)
    elif isinstance(value, list):
        items = ", ".join(hcl_value(v, indent) for v in value)
        return f"[{items}]"
    elif isinstance(value, dict):
        pad = " " * (indent + 2)
        lines = []
        for k, v in value.items():
            if v is None:
                continue
            lines.append(f"{pad}{hcl_string(str(k))} = {hcl_value(v, indent + 2)}")
        if not lines:
            return "{}"
        return "{\n" + "\n".join(lines) + "\n" + " " * indent + "}"
    elif value is None:
        return "null"
    else:
        return hcl_string(str(value))


def render_resource(resource_type: str, tf_id: str, attrs: Dict[str, Any],
                    comments: Optional[List[str]] = None) -> str:
    """Render a single HCL resource block.

    Attributes set to None are left out so optional fields never show up as
    null or empty strings.
    """
    lines = []
    if comments:
        for c in comments:
            lines.append(f"# {c}")
    lines.append(f'resource "{resource_type}" "{tf_id}" {{')
    for key, value in attrs.items():
        if value is None:
            continue
        lines.append(f"  {key} = {hcl_value(value)}")
    lines.append("}")
    return "\n".join(lines)


def render_section(title: str, blocks: List[str]) -> str:
    """Prefix rendered blocks with a section comment; empty if no blocks."""
    if not blocks:
        return ""
    return f"# {title}\n\n" + "\n\n".join(blocks)
