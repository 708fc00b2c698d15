"""
Stored representation of a post: YAML front matter plus a body.

    ---
    h: entry
    published: '2019-08-17T23:56:38.977+01:00'
    category:
    - foo
    - bar
    slug: baz
    ---
    hello world

Single-valued properties are written as scalars and read back as one-item
lists.  A lone plain-text ``content`` value without surrounding whitespace
becomes the body; anything else stays in the front matter, rich values as
``{html, value}``.
"""

import logging
from datetime import date, datetime
from typing import Any

import frontmatter
import yaml

from mf2press.errors import MalformedRequestError, PublishError
from mf2press.mf2 import DEFAULT_TYPE, Entity, Rich, coerce_value, value_to_json

logger = logging.getLogger(__name__)

TYPE_KEY = "h"


def _to_yaml(values: list) -> Any:
    values = [value_to_json(v) for v in values]
    return values[0] if len(values) == 1 else values


def _from_yaml(raw: Any):
    # unquoted dates in hand-written files come back as date objects
    if isinstance(raw, (datetime, date)):
        return raw.isoformat()
    if isinstance(raw, bool):
        return str(raw).lower()
    return coerce_value(raw)


def encode(entity: Entity) -> bytes:
    props = dict(entity.properties)
    body = ""
    content = props.get("content") or []
    # the body loses surrounding whitespace on read, so only bare text goes there
    if len(content) == 1 and not isinstance(content[0], Rich) and content[0] == content[0].strip():
        body = content[0]
        props.pop("content")

    metadata = {TYPE_KEY: entity.type[0].removeprefix("h-")}
    metadata.update({key: _to_yaml(values) for key, values in props.items()})

    post = frontmatter.Post(body)
    post.metadata.update(metadata)
    text = frontmatter.dumps(post, sort_keys=False)
    return (text.rstrip("\n") + "\n").encode("utf-8")


def decode(data: bytes | str, *, type: str | None = None) -> Entity:
    """
    Parse a stored post.  *type* is the MF2 type to assume when the file does
    not carry one (files written by hand, or by another tool).
    """
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    try:
        post = frontmatter.loads(text)
    except (yaml.YAMLError, ValueError) as exc:
        logger.warning("Unreadable front matter: %s", exc)
        raise PublishError(f"Stored post has malformed front matter: {exc}") from exc

    metadata = dict(post.metadata or {})
    h = metadata.pop(TYPE_KEY, None)
    type_ = f"h-{h}" if isinstance(h, str) and h else (type or DEFAULT_TYPE)

    props: dict[str, list] = {}
    for key, raw in metadata.items():
        raw_values = raw if isinstance(raw, list) else [raw]
        try:
            props[key] = [_from_yaml(v) for v in raw_values]
        except MalformedRequestError as exc:
            raise PublishError(f"Stored post has an unreadable “{key}”: {exc}") from exc

    body = (post.content or "").strip("\n")
    if body:
        props["content"] = [body]

    return Entity(type=[type_], properties=props).clean()
