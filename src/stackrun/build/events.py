"""Image builder progress events.

The builder streams JSON events. Progress events carry ``status`` (and
optionally ``progress``), build output carries ``stream``, the final image
id arrives as ``aux.ID`` and failures as ``error``/``errorDetail``.
"""

from __future__ import annotations

from collections.abc import Sequence

from stackrun.errors import ImageBuildError
from stackrun.runtime import BuildEvent


def event_error(event: BuildEvent) -> str | None:
    """Return the error message of a failure event, or None."""
    detail = event.get("errorDetail")
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    if event.get("error"):
        return str(event["error"])
    return None


def event_to_line(event: BuildEvent) -> str:
    """Translate one builder event into a single progress line.

    Raises:
        ImageBuildError: If the event reports a build failure.
    """
    error = event_error(event)
    if error is not None:
        raise ImageBuildError(error)

    status = event.get("status")
    if status:
        progress = event.get("progress")
        return f"{status}: {progress}" if progress else str(status)
    return str(event.get("stream", "")).strip()


def image_id_from_events(events: Sequence[BuildEvent]) -> str:
    """Return the image id of a finished build.

    The id is the last ``aux.ID`` reported, without its digest algorithm
    prefix (``sha256:abc`` becomes ``abc``).

    Raises:
        ImageBuildError: If no event carried an image id.
    """
    for event in reversed(events):
        aux = event.get("aux")
        if isinstance(aux, dict) and aux.get("ID"):
            return str(aux["ID"]).split(":")[-1]

    message = "Image build produced no image id"
    if events:
        message = event_error(events[-1]) or message
    raise ImageBuildError(message)


__all__ = ["event_error", "event_to_line", "image_id_from_events"]
