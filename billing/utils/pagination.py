MAX_PAGE_SIZE = 100


def valid_page(page: int, page_size: int) -> bool:
    return page >= 1 and 1 <= page_size <= MAX_PAGE_SIZE


def pagination_meta(page: int, page_size: int, total: int) -> dict[str, int | bool]:
    total_pages = (total + page_size - 1) // page_size
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
    }
