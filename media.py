import logging
import re
from typing import Optional

import requests

from errors import Unavailable

logger = logging.getLogger(__name__)

IMGBB_UPLOAD_URL = "https://api.imgbb.com/1/upload"
DATA_URI_PREFIX = re.compile(r"^data:image/\w+;base64,")


class ImgBBHost:
    """Uploads base64 images to ImgBB and returns the hosted URL."""

    def __init__(self, api_key: Optional[str], timeout: float = 15.0):
        self.api_key = api_key
        self.timeout = timeout

    def upload(self, image_data: str) -> str:
        if not self.api_key:
            raise Unavailable("Image hosting is not configured")
        payload = DATA_URI_PREFIX.sub("", image_data)
        try:
            resp = requests.post(
                IMGBB_UPLOAD_URL,
                params={"key": self.api_key},
                data={"image": payload},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"ImgBB upload failed: {str(e)[:80]}")
            raise Unavailable("Failed to upload image")
        if not body.get("success"):
            logger.error("ImgBB upload rejected")
            raise Unavailable("Failed to upload image")
        return body["data"]["url"]
