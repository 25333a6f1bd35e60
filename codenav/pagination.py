import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class PageState:
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        if self.total_count <= 0:
            return 0
        return math.ceil(self.total_count / self.page_size)

    @property
    def start(self) -> int:
        return min((self.page - 1) * self.page_size, self.total_count)

    @property
    def end(self) -> int:
        return min(self.start + self.page_size, self.total_count)

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages

    def to_dict(self, label: str = "results") -> Dict[str, Any]:
        return {
            "currentPage": self.page,
            "totalPages": self.total_pages,
            "totalResults": self.total_count,
            "hasMore": self.has_more,
            f"{label}PerPage": self.page_size,
        }


def paginate(items: Sequence[Any], page: int, page_size: int) -> Tuple[List[Any], PageState]:
    """Slice `items` for a 1-based `page`; pages past the end are empty."""
    if page_size < 1:
        raise ValueError("page_size must be at least 1")
    state = PageState(page=max(1, int(page)), page_size=int(page_size), total_count=len(items))
    return list(items[state.start:state.end]), state


@dataclass(frozen=True)
class CharWindow:
    content: str
    offset: int
    length: int
    total_length: int
    window: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.length < self.total_length

    @property
    def next_offset(self) -> Optional[int]:
        return self.offset + self.length if self.has_more else None

    def to_dict(self) -> Dict[str, Any]:
        total_pages = max(1, math.ceil(self.total_length / self.window)) if self.window else 1
        data: Dict[str, Any] = {
            "charOffset": self.offset,
            "charLength": self.length,
            "totalChars": self.total_length,
            "hasMore": self.has_more,
            "currentPage": (self.offset // self.window) + 1 if self.window else 1,
            "totalPages": total_pages,
        }
        if self.has_more:
            data["nextCharOffset"] = self.next_offset
        return data


def apply_char_pagination(content: str, char_offset: Optional[int] = None, char_length: Optional[int] = None) -> CharWindow:
    total = len(content)
    offset = max(0, min(int(char_offset or 0), total))
    if char_length is None:
        window = total - offset
    else:
        window = max(1, int(char_length))
    end = min(offset + window, total)
    return CharWindow(
        content=content[offset:end],
        offset=offset,
        length=end - offset,
        total_length=total,
        window=window,
    )
