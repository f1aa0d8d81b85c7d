"""Response models for GitHub collection requests."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Page(BaseModel):
    """One page of a paginated GitHub collection.

    Attributes:
        items: The raw resource objects on this page.
        next: Arguments for the next page, or None on the last page. Pass
            them back to the same collection method unchanged.
        total_count: Total number of matches (search endpoints only).
    """

    items: List[Dict[str, Any]] = Field(default_factory=list)
    next: Optional[Dict[str, Any]] = None
    total_count: Optional[int] = None

    @property
    def has_next(self) -> bool:
        return self.next is not None
