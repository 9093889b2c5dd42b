"""Tests for the shared paginated-list contract."""

from unittest.mock import AsyncMock

import pytest

from garden.pagination import MAX_PAGE_SIZE, PageParams, Paginated, paginate


@pytest.mark.parametrize(
    "page,page_size,expected",
    [
        (None, None, (1, 10)),
        (0, 0, (1, 10)),
        (-2, -5, (1, 10)),
        (3, 25, (3, 25)),
        (2, 1000, (2, MAX_PAGE_SIZE)),
    ],
)
def test_normalize(page, page_size, expected):
    params = PageParams.normalize(page, page_size)
    assert (params.page, params.page_size) == expected


def test_offset():
    assert PageParams(page=3, page_size=20).offset == 40


def test_total_pages():
    assert Paginated(total_items=0, page_size=10).total_pages == 0
    assert Paginated(total_items=10, page_size=10).total_pages == 1
    assert Paginated(total_items=11, page_size=10).total_pages == 2


@pytest.mark.asyncio
async def test_paginate_runs_count_then_fetch():
    count = AsyncMock(return_value=23)
    fetch = AsyncMock(return_value=["a", "b"])

    page = await paginate(PageParams(page=3, page_size=10), count, fetch)

    fetch.assert_awaited_once_with(10, 20)
    assert page.to_dict() == {
        "items": ["a", "b"],
        "total_items": 23,
        "page": 3,
        "page_size": 10,
        "total_pages": 3,
    }


@pytest.mark.asyncio
async def test_paginate_skips_fetch_when_empty():
    fetch = AsyncMock()
    page = await paginate(PageParams(), AsyncMock(return_value=0), fetch)
    fetch.assert_not_awaited()
    assert page.items == []
