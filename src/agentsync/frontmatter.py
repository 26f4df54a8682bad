"""Front-matter codec for markdown items.

Only a small, closed set of value shapes is supported: a plain string, a
list of strings and a one-level map of strings (used for the ``metadata``
sub-map). Anything else makes the block unparseable and the document is
treated as having no front matter at all.

The serializer emits one canonical form, so ``serialize(*parse(text))``
reproduces ``text`` for documents already written in that form::

    ---
    name: code-review
    paths: ["src/**/*.ts", "lib/**"]
    metadata:
      agentsync_managed: "true"
    ---
    body...

Other spellings parse but are normalized on write: redundantly quoted
scalars, unquoted inline lists, block lists, ``|`` scalars and CRLF line
endings inside the block all come back in the canonical form above.
"""

from __future__ import annotations

import json
import logging
import re

logger = logging.getLogger(__name__)

FrontMatterValue = str | list[str] | dict[str, str]
FrontMatter = dict[str, FrontMatterValue]

DELIMITER = "---"

_BLOCK_PATTERN = re.compile(
    r"\A---[ \t]*\r?\n(?:(?P<yaml>.*?)\r?\n)??---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL,
)
_KEY_PATTERN = re.compile(r"^(?P<key>[A-Za-z_][\w-]*):(?:[ \t]+(?P<value>.*?))?[ \t]*$")
_NESTED_PATTERN = re.compile(
    r"^[ \t]+(?P<key>[A-Za-z_][\w-]*):(?:[ \t]+(?P<value>.*?))?[ \t]*$",
)
_LIST_ITEM_PATTERN = re.compile(r"^[ \t]*-[ \t]+(?P<value>.*?)[ \t]*$")
_INLINE_ITEM_PATTERN = re.compile(
    r"""\s*("(?:[^"\\]|\\.)*"|'(?:[^']|'')*'|[^,]*?)\s*(?:,|$)""",
)
_BLOCK_SCALAR_INDICATORS = {"|", "|-", ">", ">-"}
_RESERVED_WORDS = {"true", "false", "null", "yes", "no", "on", "off", "~"}
_NUMBER_PATTERN = re.compile(r"^[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")
_QUOTE_TRIGGERS = (":", "#", '"', "'", "\\", "\n", "\t")
_LEADING_TRIGGERS = ("[", "{", ">", "|", "&", "*", "!", "%", "@", "`", "-", " ", ",", "?")


class FrontMatterSyntaxError(ValueError):
    """Raised internally when a front-matter block uses unsupported syntax."""


def has_opening_delimiter(text: str) -> bool:
    """Return True if the document starts with a front-matter delimiter line."""
    first_line = text.split("\n", 1)[0].rstrip("\r").rstrip()
    return first_line == DELIMITER


def parse(text: str) -> tuple[FrontMatter | None, str]:
    """Split a document into front matter and body.

    Returns ``(None, text)`` when the document has no opening delimiter, no
    matching closing delimiter, or a block the codec cannot read.
    """
    match = _BLOCK_PATTERN.match(text)
    if not match:
        return None, text

    raw = match.group("yaml") or ""
    try:
        metadata = _parse_block(raw)
    except FrontMatterSyntaxError as e:
        logger.debug("Ignoring unparseable front matter: %s", e)
        return None, text

    return metadata, text[match.end():]


def serialize(metadata: FrontMatter | None, body: str) -> str:
    """Render front matter and body back into a document."""
    if metadata is None:
        return body
    lines = [DELIMITER]
    lines.extend(_serialize_block(metadata))
    lines.append(DELIMITER)
    return "\n".join(lines) + "\n" + body


def _parse_block(raw: str) -> FrontMatter:
    result: FrontMatter = {}
    lines = raw.splitlines()
    index = 0

    while index < len(lines):
        line = lines[index]
        index += 1
        if not line.strip() or line.lstrip().startswith("#"):
            continue

        match = _KEY_PATTERN.match(line)
        if not match:
            msg = f"Unexpected line: {line!r}"
            raise FrontMatterSyntaxError(msg)

        key = match.group("key")
        value = (match.group("value") or "").strip()
        if key in result:
            msg = f"Duplicate key: {key}"
            raise FrontMatterSyntaxError(msg)

        if value in _BLOCK_SCALAR_INDICATORS:
            text_lines, index = _collect_indented(lines, index)
            stripped = [entry.strip() for entry in text_lines]
            separator = "\n" if value.startswith("|") else " "
            result[key] = separator.join(stripped).strip()
        elif value == "":
            children, index = _collect_indented(lines, index)
            result[key] = _parse_children(children)
        elif value.startswith("["):
            result[key] = _parse_inline_list(value)
        else:
            result[key] = _parse_scalar(value)

    return result


def _collect_indented(lines: list[str], index: int) -> tuple[list[str], int]:
    collected: list[str] = []
    while index < len(lines):
        line = lines[index]
        if line.strip() and not line[0].isspace() and not line.startswith("- "):
            break
        if line.strip():
            collected.append(line)
        index += 1
    return collected, index


def _parse_children(children: list[str]) -> FrontMatterValue:
    if not children:
        return ""

    if _LIST_ITEM_PATTERN.match(children[0]):
        items: list[str] = []
        for child in children:
            item_match = _LIST_ITEM_PATTERN.match(child)
            if not item_match:
                msg = f"Mixed list and map entries near {child!r}"
                raise FrontMatterSyntaxError(msg)
            items.append(_parse_scalar(item_match.group("value")))
        return items

    nested: dict[str, str] = {}
    for child in children:
        nested_match = _NESTED_PATTERN.match(child)
        if not nested_match:
            msg = f"Unsupported nested entry: {child!r}"
            raise FrontMatterSyntaxError(msg)
        nested_value = (nested_match.group("value") or "").strip()
        if nested_value == "" or nested_value.startswith("["):
            msg = f"Only one level of nesting is supported: {child!r}"
            raise FrontMatterSyntaxError(msg)
        nested[nested_match.group("key")] = _parse_scalar(nested_value)
    return nested


def _parse_inline_list(value: str) -> list[str]:
    if not value.endswith("]"):
        msg = f"Unterminated inline list: {value!r}"
        raise FrontMatterSyntaxError(msg)

    inner = value[1:-1].strip()
    if not inner:
        return []

    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        loaded = None
    if isinstance(loaded, list) and all(isinstance(item, str) for item in loaded):
        return loaded

    items = []
    for token in _INLINE_ITEM_PATTERN.findall(inner):
        if token:
            items.append(_parse_scalar(token))
    return items


def _parse_scalar(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return _unescape_double(value[1:-1])
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    if value.startswith(('"', "'")):
        msg = f"Unterminated quoted value: {value!r}"
        raise FrontMatterSyntaxError(msg)
    return value


def _unescape_double(value: str) -> str:
    replacements = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}
    out: list[str] = []
    chars = iter(value)
    for char in chars:
        if char == "\\":
            escaped = next(chars, "")
            out.append(replacements.get(escaped, "\\" + escaped))
        else:
            out.append(char)
    return "".join(out)


def _serialize_block(metadata: FrontMatter) -> list[str]:
    lines: list[str] = []
    for key, value in metadata.items():
        if isinstance(value, list):
            items = ", ".join(json.dumps(item, ensure_ascii=False) for item in value)
            lines.append(f"{key}: [{items}]")
        elif isinstance(value, dict):
            lines.append(f"{key}:")
            for nested_key, nested_value in value.items():
                lines.append(f"  {nested_key}: {format_scalar(nested_value)}")
        else:
            lines.append(f"{key}: {format_scalar(value)}")
    return lines


def format_scalar(value: str) -> str:
    """Quote a scalar when it would otherwise be read back differently."""
    if _needs_quoting(value):
        escaped = (
            value.replace("\\", "\\\\")
            .replace('"', '\\"')
            .replace("\n", "\\n")
            .replace("\t", "\\t")
        )
        return f'"{escaped}"'
    return value


def _needs_quoting(value: str) -> bool:
    return (
        value == ""
        or value != value.strip()
        or value.lower() in _RESERVED_WORDS
        or bool(_NUMBER_PATTERN.match(value))
        or value.startswith(_LEADING_TRIGGERS)
        or any(trigger in value for trigger in _QUOTE_TRIGGERS)
    )
