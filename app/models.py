"""Pydantic models describing catalog payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import parse_page

ContentKind = Literal["movie", "tv", "anime"]
StoredKind = Literal["movie", "tv"]
BrowseType = Literal["all", "movie", "tv", "anime"]
SortKey = Literal["popular", "top_rated", "newest", "trending"]

ANY = "all"


def stored_kind(kind: ContentKind) -> StoredKind:
    """Return the upstream/persisted type for a content kind."""

    return "movie" if kind == "movie" else "tv"


class NormalizedResult(BaseModel):
    """Uniform card shape returned to the browse UI."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    unique_id: str = Field(serialization_alias="uniqueId")
    title: str
    poster: str
    backdrop: str
    overview: str | None = None
    rating: float = 0.0
    year: str = "Unknown"
    type: ContentKind
    genres: list[str] = Field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ContentItem(BaseModel):
    """Cached view of a movie or series as stored in the local mirror."""

    model_config = ConfigDict(from_attributes=True)

    tmdb_id: int
    content_type: StoredKind
    title: str
    overview: str | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    release_date: str | None = None
    genres: list[str] = Field(default_factory=list)
    rating: float = 0.0
    last_fetched: datetime | None = None

    def to_tmdb_payload(self) -> dict[str, Any]:
        """Render the cached row in the upstream detail shape the UI expects."""

        title_key = "title" if self.content_type == "movie" else "name"
        date_key = "release_date" if self.content_type == "movie" else "first_air_date"
        return {
            "id": self.tmdb_id,
            title_key: self.title,
            "overview": self.overview,
            "poster_path": self.poster_path,
            "backdrop_path": self.backdrop_path,
            date_key: self.release_date,
            "genres": [{"name": name} for name in self.genres],
            "vote_average": self.rating,
            "media_type": self.content_type,
        }


class BrowseFilters(BaseModel):
    """Normalized view of the browse query parameters."""

    type: BrowseType = "all"
    genre: str = ANY
    year: str = ANY
    rating: str = ANY
    sort_by: SortKey = Field(
        default="popular", validation_alias=AliasChoices("sortBy", "sort_by")
    )
    language: str = ANY
    search: str = ""
    page: int = 1

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "BrowseFilters":
        return cls.model_validate(dict(params))

    @field_validator("genre", "year", "rating", "language", mode="before")
    @classmethod
    def _blank_means_any(cls, value: object) -> object:
        if value is None:
            return ANY
        if isinstance(value, str) and not value.strip():
            return ANY
        return value.strip() if isinstance(value, str) else value

    @field_validator("year")
    @classmethod
    def _validate_year(cls, value: str) -> str:
        if value != ANY and not (len(value) == 4 and value.isdigit()):
            raise ValueError("year must be a four digit year or 'all'")
        return value

    @field_validator("rating")
    @classmethod
    def _validate_rating(cls, value: str) -> str:
        if value == ANY:
            return value
        try:
            minimum = float(value.rstrip("+"))
        except ValueError as exc:
            raise ValueError("rating must be a number between 0 and 10 or 'all'") from exc
        if not 0 <= minimum <= 10:
            raise ValueError("rating must be a number between 0 and 10 or 'all'")
        return value

    @field_validator("page", mode="before")
    @classmethod
    def _parse_page(cls, value: object) -> int:
        return parse_page(value)

    @property
    def has_active_filters(self) -> bool:
        """Return whether any discover-only filter is set."""

        return any(
            value != ANY for value in (self.genre, self.year, self.rating, self.language)
        )

    @property
    def min_rating(self) -> float | None:
        if self.rating == ANY:
            return None
        return float(self.rating.rstrip("+"))

    @property
    def language_code(self) -> str | None:
        if self.language == ANY:
            return None
        return self.language[:2].lower()

    def applied(self) -> dict[str, object]:
        """Return the filters echoed back in browse responses."""

        return {
            "type": self.type,
            "genre": self.genre,
            "year": self.year,
            "rating": self.rating,
            "sortBy": self.sort_by,
            "language": self.language,
        }
