"""Parser for RFC 8288 style ``Link`` response headers.

GitHub advertises the neighbouring pages of a collection in the ``Link``
header of every paginated response:

    <https://api.github.com/repositories/1/issues?page=2>; rel="next",
    <https://api.github.com/repositories/1/issues?page=9>; rel="last"

This module turns such a header into a LinkSet, a mapping from relation
name to a Link holding the target URL and its extracted parameters.

Parsing is best-effort: a segment without ``rel`` or a segment that cannot
be parsed is dropped on its own, never failing the whole header. A listing
that already returned data must not fail because of a bad header.
"""

import logging
import re
from typing import Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)

# <url> followed by the attribute section
_SEGMENT_PATTERN = re.compile(r"^\s*<([^>]*)>\s*(.*)$", re.DOTALL)

# key="value" or key=value
_ATTRIBUTE_PATTERN = re.compile(r'^\s*([^\s=]+)\s*=\s*"?([^"]*)"?\s*$')


class Link(BaseModel):
    """A single relation from a ``Link`` header.

    Attributes:
        rel: The relation name (next, prev, first, last, ...).
        url: The target URL exactly as it appeared between ``<`` and ``>``.
        params: Query parameters of the URL merged with the non-rel
            attributes of the segment. Attributes win on conflict.
    """

    rel: str = Field(..., min_length=1)
    url: str
    params: Dict[str, str] = Field(default_factory=dict)


LinkSet = Dict[str, Link]


def split_segments(header_value: str, separator: str = ",") -> List[str]:
    """Split a header value on separators that are not inside ``<>`` or quotes.

    Args:
        header_value: The raw header value.
        separator: "," between link segments, ";" between the attributes
            of one segment.

    Returns:
        The non-empty segments, in order.
    """
    segments: List[str] = []
    current: List[str] = []
    in_brackets = False
    in_quotes = False

    for char in header_value:
        if char == "<" and not in_quotes:
            in_brackets = True
        elif char == ">" and not in_quotes:
            in_brackets = False
        elif char == '"' and not in_brackets:
            in_quotes = not in_quotes
        elif char == separator and not in_brackets and not in_quotes:
            segments.append("".join(current))
            current = []
            continue
        current.append(char)

    segments.append("".join(current))
    return [segment for segment in segments if segment.strip()]


def _parse_segment(segment: str) -> Optional[List[Link]]:
    """Parse one segment into one Link per relation name.

    Returns None when the segment is malformed or carries no ``rel``.
    """
    match = _SEGMENT_PATTERN.match(segment)
    if match is None:
        return None

    url = match.group(1).strip()
    if not url:
        return None

    try:
        query = urlsplit(url).query
    except ValueError:
        return None

    params: Dict[str, str] = dict(parse_qsl(query, keep_blank_values=True))
    rel_value: Optional[str] = None

    for part in split_segments(match.group(2), separator=";"):
        attribute = _ATTRIBUTE_PATTERN.match(part)
        if attribute is None:
            # valueless parameter such as crossorigin
            continue
        key, value = attribute.group(1).lower(), attribute.group(2).strip()
        if key == "rel":
            rel_value = value
        else:
            params[key] = value

    if not rel_value:
        return None

    # rel="next last" names two relations for the same target
    return [
        Link(rel=rel, url=url, params=dict(params))
        for rel in rel_value.split()
    ]


def parse_link_header(header_value: Optional[str]) -> LinkSet:
    """Parse a ``Link`` header into a relation table.

    Args:
        header_value: The raw header value. None or blank yields an empty
            LinkSet.

    Returns:
        Mapping from relation name to Link. For a relation that appears
        more than once, the later segment wins.
    """
    links: LinkSet = {}
    if not header_value or not header_value.strip():
        return links

    for segment in split_segments(header_value):
        parsed = _parse_segment(segment)
        if parsed is None:
            logger.debug("Skipping unparseable Link segment: %.200s", segment)
            continue
        for link in parsed:
            links[link.rel] = link

    return links
