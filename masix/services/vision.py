from __future__ import annotations

import base64
import logging

from masix.gateway.base import MediaRef
from masix.providers.router import AllProvidersFailed, ProviderRouter
from masix.services.profile_resolver import BotProfile

logger = logging.getLogger(__name__)

VISION_PROMPT = "Describe this image in detail so that another assistant can answer questions about it."
_IMAGE_KINDS = {"photo"}


def media_summary(media: MediaRef) -> str:
    return f"[Media: {media.summary()}]"


class VisionService:
    """Turns inbound images into text using the profile's vision provider, when it has one."""

    def __init__(self, router: ProviderRouter) -> None:
        self.router = router

    @staticmethod
    def is_image(media: MediaRef) -> bool:
        return media.kind in _IMAGE_KINDS or (media.mime_type or "").startswith("image/")

    async def describe(self, profile: BotProfile, media: MediaRef, data: bytes | None) -> str:
        if not profile.vision_provider or not data or not self.is_image(media):
            return media_summary(media)

        mime = media.mime_type or "image/jpeg"
        data_uri = f"data:{mime};base64,{base64.b64encode(data).decode()}"
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": VISION_PROMPT},
                    {"type": "image_url", "image_url": {"url": data_uri}},
                ],
            }
        ]
        try:
            reply = await self.router.invoke_chain(
                [profile.vision_provider], messages, policy=profile.retry, label=f"{profile.name}:vision"
            )
        except AllProvidersFailed as exc:
            logger.warning("Vision analysis failed, using summary instead: %s", exc)
            return media_summary(media)

        description = (reply.response.content or "").strip()
        if not description:
            return media_summary(media)
        return f"[Image: {media.summary()}]\n{description}"
