from src.infrastructure.notifications.in_memory import (
    InMemoryChangeNotifier,
    InMemoryNotificationSink,
    Notification,
)
from src.infrastructure.notifications.logging_sink import LoggingNotificationSink

__all__ = [
    "InMemoryChangeNotifier",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "Notification",
]
