from .channel import PushChannel
from .client import JobApiClient
from .observer import Observer
from .tracker import GenerationTracker

__all__ = [
    "GenerationTracker",
    "JobApiClient",
    "Observer",
    "PushChannel",
]
