"""Build pipeline: stage the stack, then build each function into an image."""

from stackrun.build.events import event_to_line, image_id_from_events
from stackrun.build.function import (
    BuildFunctionTask,
    build_stack,
    sanitize,
    tag_for_function,
)
from stackrun.build.stage import StageStackTask

__all__ = [
    "BuildFunctionTask",
    "StageStackTask",
    "build_stack",
    "event_to_line",
    "image_id_from_events",
    "sanitize",
    "tag_for_function",
]
