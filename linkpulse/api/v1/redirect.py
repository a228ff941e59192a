from fastapi import APIRouter, BackgroundTasks, Depends, status
from fastapi.responses import RedirectResponse
from linkpulse.config import settings
from linkpulse.dependencies import get_click_queue_provider, get_link_service
from linkpulse.services.click_publisher import ClickQueueProvider, publish_click_event
from linkpulse.services.link_service import LinkService

router = APIRouter(tags=["redirect"])


@router.get("/{short_code}")
def redirect_to_long_url(
    short_code: str,
    background_tasks: BackgroundTasks,
    url_service: LinkService = Depends(get_link_service),
    click_queue: ClickQueueProvider = Depends(get_click_queue_provider)
):
    """
    Redirect to the original URL.

    Flow:
    1. Look up the long URL (unknown code -> NotFoundError -> 404)
    2. Schedule the click event publish as a background task
    3. Redirect; the publish (and connecting to the queue, if needed) runs
       after the response has been sent

    Click tracking never delays or fails the redirect itself.
    """
    long_url = url_service.resolve(short_code)

    background_tasks.add_task(publish_click_event, click_queue, settings.queue_name, short_code)

    return RedirectResponse(url=long_url, status_code=status.HTTP_302_FOUND)
