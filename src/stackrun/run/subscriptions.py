"""Topic subscriptions and run ordering."""

from __future__ import annotations

from collections.abc import Iterable

from stackrun.config import GATEWAY_PORT
from stackrun.models import Image, Stack


def container_subscriptions(stack: Stack, gateway_port: int = GATEWAY_PORT) -> dict[str, list[str]]:
    """Map each topic to the gateway URLs of the functions subscribed to it.

    Every declared topic is present, with an empty list when nothing
    subscribes. Functions reach each other by name on the shared network.
    """
    subscriptions: dict[str, list[str]] = {topic: [] for topic in stack.topics}
    for func in stack.functions:
        url = f"http://{func.name}:{gateway_port}"
        for sub in func.subs:
            urls = subscriptions.setdefault(sub.topic, [])
            if url not in urls:
                urls.append(url)
    return subscriptions


def sort_images(images: Iterable[Image]) -> list[Image]:
    """Order images by function name, keeping input order for equal names.

    Runs allocate ports in this order, so a stack typically gets the same
    ports across refreshes.
    """
    return sorted(images, key=lambda image: image.name)


__all__ = ["container_subscriptions", "sort_images"]
