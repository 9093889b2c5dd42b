"""
Prompt templates in the ``{{.Field}}`` / ``{{range .List}}...{{end}}`` syntax.

Stored templates (configuration key ``search.prompt.template``) use the Go
text/template dialect. This module renders the subset that prompts need:

- ``{{.Field}}``, ``{{.A.B}}``, ``{{.}}``, ``{{$.Field}}``
- ``{{range .List}}...{{else}}...{{end}}``
- ``{{if .Field}}...{{else}}...{{end}}``
- ``{{/* comments */}}`` and ``{{-`` / ``-}}`` whitespace trimming
"""

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from garden.errors import TemplateError

ACTION = re.compile(r"\{\{(-\s)?\s*(.*?)\s*(\s-)?\}\}", re.DOTALL)


@dataclass
class _Text:
    text: str


@dataclass
class _Field:
    path: str


@dataclass
class _Block:
    keyword: str  # "range" or "if"
    path: str
    body: List[Any] = field(default_factory=list)
    else_body: List[Any] = field(default_factory=list)


def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    trim_next = False
    for match in ACTION.finditer(source):
        text = source[pos:match.start()]
        if trim_next:
            text = text.lstrip()
        if match.group(1):
            text = text.rstrip()
        if text:
            tokens.append(("text", text))
        tokens.append(("action", match.group(2).strip()))
        trim_next = bool(match.group(3))
        pos = match.end()

    tail = source[pos:]
    if trim_next:
        tail = tail.lstrip()
    if tail:
        tokens.append(("text", tail))
    return tokens


def _parse(tokens, pos: int, stops: Tuple[str, ...]):
    nodes: List[Any] = []
    while pos < len(tokens):
        kind, value = tokens[pos]
        pos += 1
        if kind == "text":
            nodes.append(_Text(value))
            continue

        if value.startswith("/*"):
            continue

        keyword, _, rest = value.partition(" ")
        if keyword in stops:
            return nodes, pos, keyword

        if keyword in ("range", "if"):
            if not rest.strip():
                raise TemplateError(f"missing value for {keyword}")
            block = _Block(keyword=keyword, path=rest.strip())
            block.body, pos, stop = _parse(tokens, pos, ("else", "end"))
            if stop == "else":
                block.else_body, pos, stop = _parse(tokens, pos, ("end",))
            if stop != "end":
                raise TemplateError(f"unclosed {keyword} block")
            nodes.append(block)
        elif keyword in ("end", "else"):
            raise TemplateError(f"unexpected {{{{{keyword}}}}}")
        else:
            nodes.append(_Field(value))

    return nodes, pos, None


def parse_template(source: str) -> List[Any]:
    nodes, _, _ = _parse(_tokenize(source), 0, ())
    return nodes


def _lookup(path: str, dot: Any, root: Any) -> Any:
    if path == ".":
        return dot
    if path == "$":
        return root
    if path.startswith("$."):
        value, parts = root, path[2:].split(".")
    elif path.startswith("."):
        value, parts = dot, path[1:].split(".")
    else:
        raise TemplateError(f"unsupported expression: {path}")

    for part in parts:
        if isinstance(value, dict):
            if part not in value:
                raise TemplateError(f"can't evaluate field {part}")
            value = value[part]
        elif hasattr(value, part):
            value = getattr(value, part)
        else:
            raise TemplateError(f"can't evaluate field {part}")
    return value


def _format(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _render(nodes: List[Any], dot: Any, root: Any, out: List[str]) -> None:
    for node in nodes:
        if isinstance(node, _Text):
            out.append(node.text)
        elif isinstance(node, _Field):
            out.append(_format(_lookup(node.path, dot, root)))
        elif node.keyword == "range":
            items = _lookup(node.path, dot, root) or []
            if not isinstance(items, (list, tuple)):
                raise TemplateError(f"range can't iterate over {node.path}")
            if items:
                for item in items:
                    _render(node.body, item, root, out)
            else:
                _render(node.else_body, dot, root, out)
        else:
            branch = node.body if _lookup(node.path, dot, root) else node.else_body
            _render(branch, dot, root, out)


def render_template(source: str, data: Optional[dict] = None) -> str:
    data = data or {}
    out: List[str] = []
    _render(parse_template(source), data, data, out)
    return "".join(out)
