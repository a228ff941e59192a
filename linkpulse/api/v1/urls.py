from typing import List

from fastapi import APIRouter, Depends, Response
from linkpulse.config import settings
from linkpulse.schemas.url import AnalyticsRow, ShortenRequest, ShortenResponse
from linkpulse.services.link_service import LinkService
from linkpulse.dependencies import get_link_service

router = APIRouter(tags=["urls"])


@router.post("/", response_model=ShortenResponse)
def create_short_url(
    url_data: ShortenRequest,
    url_service: LinkService = Depends(get_link_service)
):
    """Create a new short URL"""
    record = url_service.shorten(url_data.url)
    return ShortenResponse(short_url=f"{settings.base_url.rstrip('/')}/{record.short_code}")


@router.post("/api/analytics", response_model=List[AnalyticsRow])
def get_analytics(
    response: Response,
    url_service: LinkService = Depends(get_link_service)
):
    """Click totals for every short URL, most clicked first"""
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return url_service.analytics()
