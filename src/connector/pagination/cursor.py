"""Derive the arguments of the next page from a parsed ``Link`` header.

GitHub paginates different endpoints in different ways:

- page numbers (``?page=3``) for most repository collections,
- an opaque ``since`` cursor for ``/users`` and ``/repositories``,
- search endpoints whose next link repeats the full query.

The resolver hides these idioms. Given the arguments of the request that
just completed and the LinkSet of its response, it returns the arguments of
the next request, or None when there is no next page. Only the pagination
fields change; every filter, sort or query argument is carried through.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlsplit

from src.connector.pagination.links import LinkSet


logger = logging.getLogger(__name__)

PAGE_FIELD = "page"
SINCE_FIELD = "since"
PAGINATION_FIELDS = (PAGE_FIELD, SINCE_FIELD)


def _parse_page(value: Optional[str]) -> Optional[int]:
    """Return the page number if ``value`` is a positive integer string."""
    if value is None:
        return None
    try:
        page = int(value)
    except (TypeError, ValueError):
        return None
    return page if page > 0 else None


def _parse_since(value: str) -> Union[int, str]:
    """Numeric since tokens (ids, epoch seconds) become ints."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def _with_cursor(
    current_args: Mapping[str, Any],
    field: str,
    value: Union[int, str],
) -> Dict[str, Any]:
    """Copy ``current_args`` with the pagination fields replaced by one cursor."""
    next_args = {
        key: arg for key, arg in current_args.items()
        if key not in PAGINATION_FIELDS
    }
    next_args[field] = value
    return next_args


def _cursor_from_params(params: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    if params.get(SINCE_FIELD):
        return {SINCE_FIELD: _parse_since(params[SINCE_FIELD])}
    page = _parse_page(params.get(PAGE_FIELD))
    if page is not None:
        return {PAGE_FIELD: page}
    return None


def resolve_next_args(
    current_args: Mapping[str, Any],
    link_set: LinkSet,
) -> Optional[Dict[str, Any]]:
    """Compute the arguments for the next page.

    Decision order:
        1. No ``next`` relation: there are no further pages.
        2. The next link carries a ``since`` token: since-style cursor.
        3. The next link carries a numeric ``page``: page-style cursor.
        4. Otherwise the next URL's own query string is parsed for
           ``since`` or ``page``.

    Args:
        current_args: Arguments used for the request that just completed.
        link_set: Parsed ``Link`` header of its response.

    Returns:
        The next request's arguments, or None when pagination is over or
        the next link cannot be understood.
    """
    next_link = link_set.get("next")
    if next_link is None:
        return None

    cursor = _cursor_from_params(next_link.params)
    if cursor is None:
        try:
            query = urlsplit(next_link.url).query
        except ValueError:
            query = ""
        cursor = _cursor_from_params(dict(parse_qsl(query)))

    if cursor is None:
        logger.warning(
            "Failed to find next page from link",
            extra={"next_url": next_link.url},
        )
        return None

    field, value = next(iter(cursor.items()))
    return _with_cursor(current_args, field, value)
