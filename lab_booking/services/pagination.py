from __future__ import annotations

import math

MAX_PAGE_SIZE = 100


def normalize_paging(page: int | None, limit: int | None) -> tuple[int, int]:
    try:
        page_value = int(page or 1)
    except (TypeError, ValueError):
        page_value = 1
    try:
        limit_value = int(limit or 10)
    except (TypeError, ValueError):
        limit_value = 10
    return max(1, page_value), min(max(1, limit_value), MAX_PAGE_SIZE)


def build_pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": int(total or 0),
        "pages": math.ceil(int(total or 0) / limit) if limit else 0,
    }
