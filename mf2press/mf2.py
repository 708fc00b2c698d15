"""
Microformats2 documents.

An MF2 entity is a single type tag plus a bag of list-valued properties.
This module holds the entity model, the HTML -> MF2 extraction pipeline and
the Micropub ``action=update`` patch engine.  Nothing in here touches Flask.
"""

import ipaddress
import re
import socket
from dataclasses import dataclass, field
from typing import Any, Iterable
from urllib.parse import urlparse

import mf2py
import requests
from bs4 import BeautifulSoup

from mf2press.errors import (
    AmbiguousItemError,
    EmptyItemError,
    InputError,
    MalformedRequestError,
    NoItemsError,
    NotFoundError,
)

DEFAULT_TYPE = "h-entry"
FETCH_MAX_BYTES = 1 * 1024 * 1024
FETCH_TIMEOUT = 5

# HTML whitespace only; U+00A0 is content, not layout.
_WS_RE = re.compile(r"[ \t\r\n\f]+")
_LAYOUT_WS_RE = re.compile(r">[ \t\r\n\f]*[\r\n\t][ \t\r\n\f]*<")


################################################################################
# Property values
################################################################################
@dataclass(frozen=True)
class Rich:
    """A property value carrying markup and its plain-text rendering."""

    html: str
    value: str

    def __bool__(self) -> bool:
        return bool(self.html or self.value)

    def to_json(self) -> dict[str, str]:
        return {"html": self.html, "value": self.value}


PropertyValue = str | Rich


def normalize_html(html: str | None) -> str:
    """
    Collapse source layout so the same markup always serialises the same way.

    Whitespace runs between two tags that contain a line break or tab are
    layout and disappear; every other run becomes a single space.
    """
    html = _LAYOUT_WS_RE.sub("><", html or "")
    return _WS_RE.sub(" ", html).strip()


def html_to_text(html: str | None) -> str:
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text()
    return _WS_RE.sub(" ", text).strip()


def rich(html: str | None) -> Rich:
    html = normalize_html(html)
    return Rich(html=html, value=html_to_text(html))


def text_of(value: PropertyValue | None) -> str:
    if isinstance(value, Rich):
        return value.value
    return value or ""


def coerce_value(raw: Any) -> PropertyValue | None:
    """
    Turn a wire value (Micropub JSON, form field, YAML scalar) into a
    property value.  ``None`` and empty strings come back falsy so that
    cleaning drops them.
    """
    if raw is None or isinstance(raw, (str, Rich)):
        return raw
    if isinstance(raw, dict):
        if "html" in raw:
            html = raw.get("html") or ""
            value = raw.get("value")
            if not isinstance(value, str):
                value = html_to_text(html)
            return Rich(html=html, value=value)
        if isinstance(raw.get("value"), str):
            return raw["value"]
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    raise MalformedRequestError(f"Unsupported property value: {raw!r}")


def value_to_json(value: PropertyValue) -> str | dict[str, str]:
    return value.to_json() if isinstance(value, Rich) else value


def clean_values(values: Iterable[PropertyValue | None]) -> list[PropertyValue]:
    return [v for v in values if v]


def clean_properties(props: dict[str, Any]) -> dict[str, list[PropertyValue]]:
    """Coerce every value and drop empty entries and empty properties."""
    cleaned = {}
    for key, values in props.items():
        if not isinstance(values, list):
            values = [values]
        values = clean_values(coerce_value(v) for v in values)
        if values:
            cleaned[key] = values
    return cleaned


################################################################################
# Entity
################################################################################
@dataclass
class Entity:
    type: list[str] = field(default_factory=lambda: [DEFAULT_TYPE])
    properties: dict[str, list[PropertyValue]] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Any) -> "Entity":
        if not isinstance(data, dict):
            raise MalformedRequestError("MF2 document must be an object")
        types = data.get("type") or [DEFAULT_TYPE]
        if isinstance(types, str):
            types = [types]
        if not isinstance(types, list) or len(types) != 1:
            raise MalformedRequestError("Exactly one MF2 type is supported")
        props = data.get("properties") or {}
        if not isinstance(props, dict):
            raise MalformedRequestError("MF2 properties must be an object")
        return cls(type=[str(types[0])], properties=clean_properties(props))

    def to_json(self) -> dict[str, Any]:
        return {
            "type": list(self.type),
            "properties": {
                k: [value_to_json(v) for v in vals]
                for k, vals in self.properties.items()
            },
        }

    def copy(self) -> "Entity":
        # values are immutable (str / frozen Rich), so fresh lists are enough
        return Entity(
            type=list(self.type),
            properties={k: list(v) for k, v in self.properties.items()},
        )

    def has(self, name: str) -> bool:
        return bool(self.properties.get(name))

    def first(self, name: str, default: PropertyValue | None = None):
        values = self.properties.get(name)
        return values[0] if values else default

    def normalize(self, name: str) -> None:
        """Drop falsy entries of *name*; an emptied property is removed."""
        values = clean_values(self.properties.get(name) or [])
        if values:
            self.properties[name] = values
        else:
            self.properties.pop(name, None)

    def clean(self) -> "Entity":
        for name in list(self.properties):
            self.normalize(name)
        return self


################################################################################
# Extraction (HTML -> MF2)
################################################################################
def _parsed_value(raw: Any) -> PropertyValue | None:
    # e-* properties carry markup; u-photo with alt and nested
    # microformats collapse to their plain value
    if isinstance(raw, dict):
        if "html" in raw:
            return rich(raw["html"])
        value = raw.get("value")
        return value if isinstance(value, str) else None
    return raw if isinstance(raw, str) else None


def _single_item(html: str | None, url: str | None) -> tuple[str, dict]:
    if not html:
        raise InputError("No HTML provided")

    items = mf2py.parse(doc=html, url=url).get("items") or []
    if not items:
        raise NoItemsError("Page has no items")
    if len(items) > 1:
        raise AmbiguousItemError("Page has more than one item")

    item = items[0]
    props = {}
    for key, values in (item.get("properties") or {}).items():
        values = clean_values(_parsed_value(v) for v in values)
        if values:
            props[key] = values
    if not props:
        raise EmptyItemError("Item has no properties")

    types = item.get("type") or [DEFAULT_TYPE]
    return types[0], props


def extract(
    html: str | None,
    properties: str | Iterable[str] | None = None,
    *,
    url: str | None = None,
) -> dict[str, list[PropertyValue]]:
    """
    Return the properties of the only microformat on *html*.

    *properties* narrows the result: a single name yields ``{}`` when the
    item lacks it, a sequence yields the names that exist, in the order
    they were asked for.
    """
    _type, props = _single_item(html, url)
    if properties is None:
        return props
    if isinstance(properties, str):
        return {properties: props[properties]} if properties in props else {}
    return {name: props[name] for name in properties if name in props}


def extract_entity(html: str | None, *, url: str | None = None) -> Entity:
    type_, props = _single_item(html, url)
    return Entity(type=[type_], properties=props)


# ── remote pages ─────────────────────────────────────────────────────────
_BAD_NETS = [
    ipaddress.ip_network(n)
    for n in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "224.0.0.0/4",
        "240.0.0.0/4",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
        "ff00::/8",
    )
]
LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _is_private(host: str) -> bool:
    """True ⇢ *host* resolves **only** to private / reserved addresses."""
    try:
        ip_obj = ipaddress.ip_address(host)
    except ValueError:
        ip_obj = None
    else:
        return any(ip_obj in net for net in _BAD_NETS)

    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror:
        return False  # offline / unresolvable ⇒ let requests report it

    for _fam, *_rest, sockaddr in infos:
        try:
            ip_obj = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if not any(ip_obj in net for net in _BAD_NETS):
            return False
    return True


def fetch_html(url: str) -> str:
    """
    Fetch a published page so it can be run through :func:`extract`.

    • HTTPS only, unless the host is localhost
    • hosts resolving only to private / reserved networks are refused
    • the response must be ``text/html`` and stay below 1 MiB
    """
    parsed = urlparse(url or "")
    host = parsed.hostname or ""
    if not host:
        raise InputError("Malformed URL: host missing")
    if host not in LOCALHOST_HOSTS and _is_private(host):
        raise InputError("Refusing to fetch from a private/reserved address")
    if parsed.scheme != "https" and host not in LOCALHOST_HOSTS:
        raise InputError("Remote pages must use HTTPS")

    try:
        with requests.get(
            url,
            timeout=FETCH_TIMEOUT,
            stream=True,
            headers={"Accept": "text/html"},
        ) as resp:
            resp.raise_for_status()

            ctype = resp.headers.get("Content-Type", "")
            if "text/html" not in ctype:
                raise InputError(f"Unexpected Content-Type “{ctype}”")

            raw = b""
            for chunk in resp.iter_content(8192):
                raw += chunk
                if len(raw) > FETCH_MAX_BYTES:
                    raise InputError("Remote page too large (>1 MiB)")
            return raw.decode(resp.encoding or "utf-8", errors="replace")
    except requests.RequestException as exc:
        raise NotFoundError(f"Cannot fetch {url}: {exc}") from exc


################################################################################
# Post type discovery
################################################################################
# (property, post type) in precedence order
RESPONSE_PROPERTIES = (
    ("rsvp", "rsvp"),
    ("in-reply-to", "reply"),
    ("repost-of", "repost"),
    ("like-of", "like"),
    ("bookmark-of", "bookmark"),
    ("checkin", "checkin"),
    ("video", "video"),
    ("photo", "photo"),
    ("audio", "audio"),
)


def discover_post_type(entity: Entity) -> str:
    if entity.type and entity.type[0] == "h-event":
        return "event"
    for prop, post_type in RESPONSE_PROPERTIES:
        if entity.has(prop):
            return post_type

    name = _WS_RE.sub(" ", text_of(entity.first("name"))).strip()
    if not name:
        return "note"
    content = _WS_RE.sub(" ", text_of(entity.first("content"))).strip()
    return "note" if content.startswith(name) else "article"


################################################################################
# Update requests
################################################################################
UPDATE_KEYS = frozenset({"action", "url", "replace", "add", "delete"})
IGNORED_KEYS = frozenset({"access_token"})  # auth is handled upstream
URL_ACTIONS = frozenset({"update", "delete", "undelete"})


@dataclass(frozen=True)
class WholeKeys:
    """``delete: ["category", ...]``"""

    keys: tuple[str, ...]


@dataclass(frozen=True)
class ValueScoped:
    """``delete: {"category": ["foo"]}``"""

    values: dict[str, list[PropertyValue]]


DeleteDirective = WholeKeys | ValueScoped


@dataclass
class UpdateRequest:
    action: str = "update"
    url: str | None = None
    replace: dict[str, list[PropertyValue]] = field(default_factory=dict)
    add: dict[str, list[PropertyValue]] = field(default_factory=dict)
    delete: DeleteDirective | None = None


def _value_list(where: str, values: Any) -> list[PropertyValue]:
    if not isinstance(values, list):
        raise MalformedRequestError(f"{where} should be an array")
    return [coerce_value(v) for v in values]


def _directive_map(name: str, raw: Any) -> dict[str, list[PropertyValue]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise MalformedRequestError(f"{name} should be an object")
    return {key: _value_list(f"{name}.{key}", vals) for key, vals in raw.items()}


def _delete_directive(raw: Any) -> DeleteDirective | None:
    if raw is None:
        return None
    if isinstance(raw, list):
        if not all(isinstance(k, str) for k in raw):
            raise MalformedRequestError("delete should list property names")
        return WholeKeys(tuple(raw))
    if isinstance(raw, dict):
        return ValueScoped(_directive_map("delete", raw))
    raise MalformedRequestError("delete should be an array or an object")


def parse_update_request(body: Any) -> UpdateRequest:
    """Validate a Micropub action body once, up front."""
    if not isinstance(body, dict):
        raise MalformedRequestError("Request body should be an object")

    unknown = set(body) - UPDATE_KEYS - IGNORED_KEYS
    if unknown:
        raise MalformedRequestError(f"Unrecognized keys: {', '.join(sorted(unknown))}")

    action = body.get("action") or "update"
    if not isinstance(action, str):
        raise MalformedRequestError("action should be a string")
    url = body.get("url")
    if action in URL_ACTIONS and not (isinstance(url, str) and url):
        raise MalformedRequestError(f"{action} requires a url")

    return UpdateRequest(
        action=action,
        url=url,
        replace=_directive_map("replace", body.get("replace")),
        add=_directive_map("add", body.get("add")),
        delete=_delete_directive(body.get("delete")),
    )


################################################################################
# Patch engine
################################################################################
def replace_properties(
    entity: Entity, replacements: dict[str, list[PropertyValue]]
) -> Entity:
    updated = entity.copy()
    for key, values in replacements.items():
        updated.properties[key] = list(values)
        updated.normalize(key)
    return updated


def add_properties(entity: Entity, additions: dict[str, list[PropertyValue]]) -> Entity:
    """Append to existing properties, creating them when absent.  No dedupe."""
    updated = entity.copy()
    for key, values in additions.items():
        updated.properties[key] = updated.properties.get(key, []) + list(values)
        updated.normalize(key)
    return updated


def delete_properties(entity: Entity, directive: DeleteDirective | None) -> Entity:
    """
    Whole-key deletion drops the property outright.  Value-scoped deletion
    removes the first remaining match once per listed value, so listing a
    value twice removes two occurrences.
    """
    updated = entity.copy()
    if directive is None:
        return updated

    if isinstance(directive, WholeKeys):
        for key in directive.keys:
            updated.properties.pop(key, None)
    elif isinstance(directive, ValueScoped):
        for key, to_remove in directive.values.items():
            values = updated.properties.get(key)
            if not values:
                continue
            for value in to_remove:
                if value in values:
                    values.remove(value)
            updated.normalize(key)
    else:
        raise MalformedRequestError(f"Unsupported delete directive: {directive!r}")
    return updated


def apply_update(entity: Entity, request: UpdateRequest) -> Entity:
    """replace, then add, then delete; the input entity is left untouched."""
    updated = replace_properties(entity, request.replace)
    updated = add_properties(updated, request.add)
    return delete_properties(updated, request.delete)
