import logging
import random
from dataclasses import dataclass, field
from typing import Optional

import httpx

from miragecodex.errors import ProviderError, ProviderNotConfiguredError
from miragecodex.settings.config import settings

logger = logging.getLogger(__name__)

MAX_SEED = 2147483647


@dataclass
class GeneratedImage:
    data: bytes
    params: dict = field(default_factory=dict)


class ImageClient:
    """Segmind text-to-image over httpx; one request per image, JPG bytes back."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.SEGMIND_API_KEY
        self.base_url = (base_url or settings.SEGMIND_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.IMAGE_TIMEOUT_SECONDS
        self._transport = transport

    async def generate(
        self,
        prompt: str,
        *,
        endpoint: str,
        width: int,
        height: int,
        steps: int,
        seed: Optional[int] = None,
    ) -> GeneratedImage:
        if not self.api_key:
            raise ProviderNotConfiguredError("Image generation service not configured")

        payload = {
            "positivePrompt": prompt,
            "width": width,
            "height": height,
            "steps": steps,
            "seed": seed if seed is not None else random.randint(0, MAX_SEED),
            "CFGScale": 7,
            "outputFormat": "JPG",
            "scheduler": "Euler",
        }
        url = f"{self.base_url}/{endpoint}"
        logger.info("Requesting %dx%d image from %s", width, height, endpoint)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as c:
                r = await c.post(url, json=payload, headers={"x-api-key": self.api_key})
        except httpx.HTTPError as e:
            logger.error("Image request to %s failed: %s", endpoint, e)
            raise ProviderError("Failed to generate image") from e

        if r.status_code != 200:
            logger.error("Image provider %s returned %s: %s", endpoint, r.status_code, r.text[:1000])
            raise ProviderError("Failed to generate image")

        return GeneratedImage(
            data=r.content,
            params={
                "width": width,
                "height": height,
                "steps": steps,
                "seed": payload["seed"],
                "cfg_scale": payload["CFGScale"],
            },
        )


def get_image_client() -> ImageClient:
    return ImageClient()
