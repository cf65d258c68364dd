"""
EdgeCache gateway - public content router.

Published pages served with ETag validation. Drafts and unknown slugs
answer 404 without caching metadata.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, status

from ...shared.schemas import api_error, api_success
from ..public_cache import public_cache

router = APIRouter()

PUBLISHED = "published"


class PageStore:
    """In-memory CMS pages keyed by slug."""

    def __init__(self, pages: Optional[Dict[str, Dict[str, Any]]] = None):
        self.pages: Dict[str, Dict[str, Any]] = dict(pages or {})

    def put(self, slug: str, title: str, content: Any, page_status: str = PUBLISHED) -> Dict[str, Any]:
        page = {"slug": slug, "title": title, "content": content, "status": page_status}
        self.pages[slug] = page
        return page

    def published(self, slug: str) -> Optional[Dict[str, Any]]:
        page = self.pages.get(slug)
        if page is None or page["status"] != PUBLISHED:
            return None
        return page


def get_page_store(request: Request) -> PageStore:
    return request.app.state.page_store


@router.get("/pages/{slug}")
@public_cache()
async def get_page(slug: str, pages: PageStore = Depends(get_page_store)):
    page = pages.published(slug)
    if page is None:
        return api_error("Page not found", status_code=status.HTTP_404_NOT_FOUND)
    return api_success(data=page)
