from photogen.domain.errors import ChannelError, JobExecutionError
from photogen.domain.events import (
    Complete,
    ConnectionFailed,
    ExecutionFailed,
    ItemUpdated,
    Progress,
    TrackerEvent,
)
from photogen.domain.models import GenerationJob, VisualItem

class Observer:
    """
    Convenience base for tracker subscribers: routes each event variant to a
    method. Override only what you need; the defaults do nothing.
    """

    def __call__(self, event: TrackerEvent) -> None:
        if isinstance(event, ItemUpdated):
            self.on_item_update(event.item)
        elif isinstance(event, Progress):
            self.on_progress(event.completed, event.total)
        elif isinstance(event, Complete):
            self.on_complete(event.job)
        elif isinstance(event, ConnectionFailed):
            self.on_connection_error(event.error)
        elif isinstance(event, ExecutionFailed):
            self.on_execution_error(event.error)

    def on_item_update(self, item: VisualItem) -> None:
        pass

    def on_progress(self, completed: int, total: int) -> None:
        pass

    def on_complete(self, job: GenerationJob) -> None:
        pass

    def on_connection_error(self, error: ChannelError) -> None:
        pass

    def on_execution_error(self, error: JobExecutionError) -> None:
        pass
