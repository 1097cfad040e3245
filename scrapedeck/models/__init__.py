from scrapedeck.models.job import Job
from scrapedeck.models.result import Result
from scrapedeck.models.execution import JobExecution, JobProgress
from scrapedeck.models.product import PriceHistory, Product
from scrapedeck.models.notification import (
    Notification,
    NotificationHistory,
    NotificationSettings,
    QueuedNotification,
)
from scrapedeck.models.website import Website
from scrapedeck.models.ai_session import AISession

__all__ = [
    "Job",
    "Result",
    "JobExecution",
    "JobProgress",
    "Product",
    "PriceHistory",
    "Notification",
    "NotificationSettings",
    "NotificationHistory",
    "QueuedNotification",
    "Website",
    "AISession",
]
