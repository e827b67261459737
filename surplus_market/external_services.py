"""
Helper functions for talking to the image hosting service
"""
import logging
from typing import Optional

import requests

from .config import IMAGE_UPLOAD_API_KEY, IMAGE_UPLOAD_URL
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


def upload_image(image: Optional[str]) -> str:
    """Upload ``image`` (a data URI or remote URL) and return its hosted URL.

    Without IMAGE_UPLOAD_URL configured the value is stored as given.
    """
    if not image:
        return ""
    if not IMAGE_UPLOAD_URL:
        return image

    headers = {"Authorization": f"Bearer {IMAGE_UPLOAD_API_KEY}"} if IMAGE_UPLOAD_API_KEY else {}
    try:
        response = requests.post(
            IMAGE_UPLOAD_URL,
            json={"file": image},
            headers=headers,
            timeout=10,
        )
    except requests.exceptions.RequestException as e:
        logger.warning("image upload failed: %s", e)
        raise ExternalServiceError(f"Image service is unavailable: {str(e)}")

    if response.status_code not in (200, 201):
        logger.warning("image upload rejected status=%s", response.status_code)
        raise ExternalServiceError(
            "Image upload failed",
            upstream_status=response.status_code,
        )

    data = response.json()
    url = data.get("secure_url") or data.get("url")
    if not url:
        raise ExternalServiceError("Image service returned no URL")
    return url
