"""
Wire formats for GEL ports.

Response bodies and resource files are decoded into plain Python values
(dict / list / str / int / bool / None) that scripts can walk with dotted
access; request payloads are encoded back from script values. Three formats
are understood: json, yaml and xml.
"""
from __future__ import annotations

import collections.abc
import json
import re
from typing import Any, Callable, Dict, Optional, Tuple
from xml.parsers.expat import ExpatError

import xmltodict
import yaml

_CHARSET_RE = re.compile(r'charset\s*=\s*["\']?([^\s;"\']+)', re.IGNORECASE)

# Content-type substrings, checked in order.
_CONTENT_TYPE_MARKERS = (('json', 'json'), ('yaml', 'yaml'), ('xml', 'xml'))

DECODE_ERRORS = (ValueError, yaml.YAMLError, ExpatError)


def to_builtin(obj: Any) -> Any:
    """Turns xmltodict output and other Mapping types into plain dicts, recursively."""
    if isinstance(obj, collections.abc.Mapping):
        return {key: to_builtin(val) for key, val in obj.items()}
    if isinstance(obj, list):
        return [to_builtin(item) for item in obj]
    return obj


def _decode_xml(text: str) -> Any:
    return to_builtin(xmltodict.parse(text))


def _encode_json(value: Any, pretty: bool, xml_root: str) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2 if pretty else None)


def _encode_yaml(value: Any, pretty: bool, xml_root: str) -> str:
    return yaml.safe_dump(value, sort_keys=False, allow_unicode=True)


def _encode_xml(value: Any, pretty: bool, xml_root: str) -> str:
    if not isinstance(value, dict):
        value = {xml_root: value}
    return xmltodict.unparse(value, pretty=pretty)


# name -> (decoder, encoder)
FORMATS: Dict[str, Tuple[Callable[[str], Any], Callable[[Any, bool, str], str]]] = {
    'json': (json.loads, _encode_json),
    'yaml': (yaml.safe_load, _encode_yaml),
    'xml': (_decode_xml, _encode_xml),
}


def _as_text(data: bytes | bytearray | str, content_type: Optional[str]) -> str:
    if isinstance(data, str):
        return data
    charset = 'utf-8'
    match = _CHARSET_RE.search(content_type or "")
    if match:
        charset = match.group(1)
    try:
        return bytes(data).decode(charset, errors='replace')
    except LookupError:
        return bytes(data).decode('utf-8', errors='replace')


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """Picks 'json', 'yaml' or 'xml' from a Content-Type, else by sniffing the text.

    Returns None when neither gives an answer; such bodies stay text.
    """
    lowered = (content_type or "").lower()
    for marker, name in _CONTENT_TYPE_MARKERS:
        if marker in lowered:
            return name
    head = (data_hint or "").lstrip()[:1]
    if head in ('{', '['):
        return 'json'
    if head == '<':
        return 'xml'
    return None


def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None,
                strict: bool = False) -> Any:
    """
    Decodes `data` as `fmt`, or as the format named by `content_type` or
    sniffed from the text. Bodies of no known format are returned as text.
    A body that fails to decode is also returned as text unless `strict`
    is set, in which case the decoder's error propagates.
    """
    text = _as_text(data, content_type)
    name = fmt or detect_format(content_type, text)
    if name not in FORMATS:
        return text
    decoder, _ = FORMATS[name]
    try:
        return decoder(text)
    except DECODE_ERRORS:
        if strict:
            raise
        return text


def serialize(value: Any, *, fmt: str, pretty: bool = True, xml_root: str = "root") -> str:
    """Encodes a script value as json, yaml or xml text.

    XML needs a single root element: non-dict values are wrapped as
    `{xml_root: value}`.
    """
    entry = FORMATS.get((fmt or "").lower())
    if entry is None:
        raise ValueError(f"cannot serialize to {fmt!r}; expected one of {', '.join(FORMATS)}")
    _, encoder = entry
    return encoder(to_builtin(value), pretty, xml_root)
