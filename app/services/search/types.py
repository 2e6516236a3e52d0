from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class SearchCredentials:
    api_key: str
    engine_id: str

    def __repr__(self) -> str:
        return "SearchCredentials(api_key='***', engine_id='***')"


@dataclass(frozen=True)
class SearchItem:
    url: str
    title: str
    snippet: str
    display_link: str | None
    formatted_url: str | None
    rank: int
    page_number: int


@dataclass(frozen=True)
class SearchPage:
    start_index: int
    next_start_index: int | None
    total_results: int
    items: list[SearchItem] = field(default_factory=list)

    @property
    def has_next_page(self) -> bool:
        return self.next_start_index is not None
