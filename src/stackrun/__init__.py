"""
stackrun - build every function of a multi-service stack into a container
image and run them together as a local cluster.

Modules:
    tasks     Task abstraction and sibling-group settling
    timeout   Deadline race with guaranteed cleanup
    build     Stage stack, build one function into an image
    run       Network/volume provisioning, port allocation, container start
    session   Interactive refresh/quit state machine
    runtime   Container runtime protocol, Docker and in-memory implementations
"""

__version__ = "0.1.0"

from stackrun.errors import ErrorCategory, StackRunError  # noqa: E402
from stackrun.models import FunctionDescriptor, Image, RunContext, Stack  # noqa: E402

__all__ = [
    "ErrorCategory",
    "FunctionDescriptor",
    "Image",
    "RunContext",
    "Stack",
    "StackRunError",
    "__version__",
]
