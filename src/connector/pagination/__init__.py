"""Pagination support for GitHub collections.

- parse_link_header: Link header -> LinkSet
- resolve_next_args: current arguments + LinkSet -> next page arguments
"""

from src.connector.pagination.cursor import (
    PAGINATION_FIELDS,
    resolve_next_args,
)
from src.connector.pagination.links import Link, LinkSet, parse_link_header

__all__ = [
    "Link",
    "LinkSet",
    "PAGINATION_FIELDS",
    "parse_link_header",
    "resolve_next_args",
]
