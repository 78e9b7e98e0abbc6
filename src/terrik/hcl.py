"""HCL loading engine — parse .tf/.hcl files into a Configuration."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import hcl2
import jinja2
from lark.exceptions import LarkError

from .config import Configuration
from .errors import ConfigurationError, DuplicateAttributeError

logger = logging.getLogger(__name__)

SUFFIXES = (".tf", ".hcl")

_META_KEYS = frozenset({"__is_block__", "__start_line__", "__end_line__"})

_BLOCK_HEADER = re.compile(r'^\s*(resource|data|variable|output)\s+"([^"]+)"(?:\s+"([^"]+)")?')
_STRING = re.compile(r'"(?:\\.|[^"\\])*"')


def scan(
    path: str | Path,
    *,
    recurse: bool = False,
    context: dict[str, Any] | None = None,
) -> Configuration:
    """Load a file, or every .tf/.hcl file in a directory, into a Configuration."""
    path = Path(path)
    config = Configuration()

    if path.is_file():
        files = [path]
    elif path.is_dir():
        pattern = "**/*" if recurse else "*"
        files = sorted(f for f in path.glob(pattern) if f.is_file() and f.suffix in SUFFIXES)
    else:
        raise ConfigurationError(f"No such file or directory: '{path}'")

    for file in files:
        logger.debug("Loading %s", file)
        config.load(load(file, context=context))

    logger.info("Loaded %d file(s) with %d declaration(s)", len(files), len(config))
    return config


def load(
    file: Path,
    *,
    context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Load and parse a single HCL file, rendering Jinja2 templates with context."""
    text = file.read_text()
    ctx = {"env": dict(os.environ)}
    ctx.update(context or {})
    env = jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    try:
        template = env.from_string(text)
        text = template.render(ctx)
    except jinja2.TemplateError as exc:
        raise ConfigurationError(f"{file}: {exc}") from exc
    return loads(text, source=str(file))


def loads(text: str, *, source: str = "<string>") -> dict[str, Any]:
    """Parse HCL text into plain dicts and lists."""
    try:
        data = hcl2.loads(text)
    except RuntimeError as exc:
        # python-hcl2 reports repeated attributes as "<key> already defined"
        message = str(exc)
        if "already defined" in message:
            key = message.split()[0].strip("'\"")
            raise DuplicateAttributeError(_defining_block(text, key) or source, key) from exc
        raise ConfigurationError(f"{source}: {message}") from exc
    except (LarkError, ValueError) as exc:
        raise ConfigurationError(f"{source}: {exc}") from exc
    return _normalize(data)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _normalize(obj: Any) -> Any:
    """Strip parser metadata and quoting that some python-hcl2 versions emit."""
    if isinstance(obj, dict):
        return {
            _unquote(k) if isinstance(k, str) else k: _normalize(v)
            for k, v in obj.items()
            if k not in _META_KEYS
        }
    if isinstance(obj, list):
        return [_normalize(v) for v in obj]
    if isinstance(obj, str):
        return _unquote(obj)
    return obj


def _block_address(kind: str, first: str, second: str | None) -> str:
    if kind == "resource":
        return f"{first}.{second}"
    if kind == "data":
        return f"data.{first}.{second}"
    return f"{'var' if kind == 'variable' else kind}.{first}"


def _defining_block(text: str, key: str) -> str | None:
    """Address of the top-level block that assigns ``key`` twice at one nesting level."""
    assign = re.compile(rf'^\s*"?{re.escape(key)}"?\s*=')
    owner: str | None = None
    # one flag per open brace: has ``key`` been assigned at that level
    seen: list[bool] = []
    for line in text.splitlines():
        header = _BLOCK_HEADER.match(line)
        if header and not seen:
            owner = _block_address(*header.groups())
        if seen and assign.match(line):
            if seen[-1]:
                return owner
            seen[-1] = True
        for char in _STRING.sub('""', line):
            if char == "{":
                seen.append(False)
            elif char == "}" and seen:
                seen.pop()
    return None
