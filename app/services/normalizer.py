"""Conversion of TMDB payloads into the shapes served by CineScope.

Every upstream payload is normalized through one function per content kind.
Movies carry ``title``/``release_date``; series and anime carry
``name``/``first_air_date``. The kind is always known from the query that
produced the payload, so no field probing is needed to tell them apart.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from ..models import ContentKind, NormalizedResult, StoredKind, stored_kind

DEFAULT_IMAGE_BASE = "https://image.tmdb.org/t/p"
POSTER_SIZE = "w500"
BACKDROP_SIZE = "original"
POSTER_FALLBACK = "/placeholder-poster.jpg"
BACKDROP_FALLBACK = "/placeholder-backdrop.jpg"
UNKNOWN_YEAR = "Unknown"
MAX_CARD_GENRES = 3
FALLBACK_GENRES = ("Action",)

# One flat table for both movie and TV ids. Shared ids (16, 35, 80, ...) mean
# the same thing in both vocabularies; the TV-only composite ids keep their
# composite names instead of collapsing onto a single movie genre.
GENRE_NAMES: dict[int, str] = {
    28: "Action",
    12: "Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    14: "Fantasy",
    36: "History",
    27: "Horror",
    10402: "Music",
    9648: "Mystery",
    10749: "Romance",
    878: "Sci-Fi",
    10770: "TV Movie",
    53: "Thriller",
    10752: "War",
    37: "Western",
    10759: "Action & Adventure",
    10762: "Kids",
    10763: "News",
    10764: "Reality",
    10765: "Sci-Fi & Fantasy",
    10766: "Soap",
    10767: "Talk",
    10768: "War & Politics",
}

# Browse filter vocabulary. TV has no separate Action/Adventure or
# Fantasy/Sci-Fi genres, so those names share the composite TV id.
FILTER_GENRE_IDS: dict[StoredKind, dict[str, int]] = {
    "movie": {
        "action": 28,
        "adventure": 12,
        "animation": 16,
        "comedy": 35,
        "crime": 80,
        "documentary": 99,
        "drama": 18,
        "fantasy": 14,
        "horror": 27,
        "mystery": 9648,
        "romance": 10749,
        "sci-fi": 878,
        "thriller": 53,
        "war": 10752,
        "western": 37,
    },
    "tv": {
        "action": 10759,
        "adventure": 10759,
        "animation": 16,
        "comedy": 35,
        "crime": 80,
        "documentary": 99,
        "drama": 18,
        "fantasy": 10765,
        "horror": 27,
        "mystery": 9648,
        "romance": 10749,
        "sci-fi": 10765,
        "thriller": 53,
        "war": 10768,
        "western": 37,
    },
}


def genre_id_for(name: str, kind: ContentKind) -> int | None:
    """Map a browse genre name to the TMDB id for ``kind``; ``None`` if unknown."""

    return FILTER_GENRE_IDS[stored_kind(kind)].get(name.strip().casefold())


def image_url(
    path: str | None,
    size: str,
    fallback: str,
    base_url: str = DEFAULT_IMAGE_BASE,
) -> str:
    if not path:
        return fallback
    if path.startswith(("http://", "https://")):
        return path
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{base_url}/{size}{path}"


def extract_year(date_value: object) -> str:
    if not isinstance(date_value, str):
        return UNKNOWN_YEAR
    year = date_value.strip()[:4]
    return year or UNKNOWN_YEAR


def _genre_ids(item: Mapping[str, Any]) -> list[int]:
    raw = item.get("genre_ids")
    if raw is None:
        raw = [
            genre.get("id")
            for genre in item.get("genres") or []
            if isinstance(genre, Mapping)
        ]
    ids: list[int] = []
    for value in raw or []:
        try:
            ids.append(int(value))
        except (TypeError, ValueError):
            continue
    return ids


def genre_names(item: Mapping[str, Any], *, limit: int | None = None) -> list[str]:
    """Resolve the item's genre ids to names, keeping upstream order."""

    names: list[str] = []
    for genre_id in _genre_ids(item):
        name = GENRE_NAMES.get(genre_id)
        if name and name not in names:
            names.append(name)
    if limit is not None:
        names = names[:limit]
    return names


def _rating(item: Mapping[str, Any]) -> float:
    try:
        return float(item.get("vote_average") or 0)
    except (TypeError, ValueError):
        return 0.0


def _build_result(
    item: Mapping[str, Any],
    kind: ContentKind,
    *,
    title: object,
    date_value: object,
    image_base: str,
) -> NormalizedResult:
    tmdb_id = int(item["id"])
    return NormalizedResult(
        id=tmdb_id,
        unique_id=f"{kind}_{tmdb_id}",
        title=str(title or "Untitled"),
        poster=image_url(item.get("poster_path"), POSTER_SIZE, POSTER_FALLBACK, image_base),
        backdrop=image_url(
            item.get("backdrop_path"), BACKDROP_SIZE, BACKDROP_FALLBACK, image_base
        ),
        overview=item.get("overview") or None,
        rating=_rating(item),
        year=extract_year(date_value),
        type=kind,
        genres=genre_names(item, limit=MAX_CARD_GENRES) or list(FALLBACK_GENRES),
    )


def _normalize_movie(item: Mapping[str, Any], image_base: str) -> NormalizedResult:
    return _build_result(
        item,
        "movie",
        title=item.get("title"),
        date_value=item.get("release_date"),
        image_base=image_base,
    )


def _normalize_series(item: Mapping[str, Any], image_base: str) -> NormalizedResult:
    return _build_result(
        item,
        "tv",
        title=item.get("name"),
        date_value=item.get("first_air_date"),
        image_base=image_base,
    )


def _normalize_anime(item: Mapping[str, Any], image_base: str) -> NormalizedResult:
    return _build_result(
        item,
        "anime",
        title=item.get("name"),
        date_value=item.get("first_air_date"),
        image_base=image_base,
    )


_NORMALIZERS: dict[str, Callable[[Mapping[str, Any], str], NormalizedResult]] = {
    "movie": _normalize_movie,
    "tv": _normalize_series,
    "anime": _normalize_anime,
}


def normalize(
    item: Mapping[str, Any],
    kind: ContentKind,
    *,
    image_base: str = DEFAULT_IMAGE_BASE,
) -> NormalizedResult:
    """Normalize one upstream list or detail payload of the given kind."""

    try:
        normalizer = _NORMALIZERS[kind]
    except KeyError as exc:
        raise ValueError(f"Unsupported content kind: {kind}") from exc
    return normalizer(item, image_base)


def normalize_many(
    items: object,
    kind: ContentKind,
    *,
    image_base: str = DEFAULT_IMAGE_BASE,
) -> list[NormalizedResult]:
    """Normalize a ``results`` list, skipping entries without an id."""

    if not isinstance(items, list):
        return []
    return [
        normalize(item, kind, image_base=image_base)
        for item in items
        if isinstance(item, Mapping) and item.get("id") is not None
    ]


def to_content_values(item: Mapping[str, Any], kind: ContentKind) -> dict[str, Any]:
    """Return column values for persisting ``item`` in the local mirror."""

    target = stored_kind(kind)
    if target == "movie":
        title, date_value = item.get("title"), item.get("release_date")
    else:
        title, date_value = item.get("name"), item.get("first_air_date")

    detail_genres = [
        str(genre["name"])
        for genre in item.get("genres") or []
        if isinstance(genre, Mapping) and genre.get("name")
    ]

    return {
        "tmdb_id": int(item["id"]),
        "content_type": target,
        "title": str(title or "Untitled"),
        "overview": item.get("overview") or None,
        "poster_path": item.get("poster_path") or None,
        "backdrop_path": item.get("backdrop_path") or None,
        "release_date": date_value or None,
        "genres": detail_genres or genre_names(item),
        "rating": _rating(item),
    }


def is_anime(item: Mapping[str, Any]) -> bool:
    """Return whether a TV payload is Japanese animation."""

    origin = item.get("origin_country") or []
    return 16 in _genre_ids(item) and "JP" in origin
