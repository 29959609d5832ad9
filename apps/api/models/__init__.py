"""Models package."""

from .user import User
from .connection import Connection
from .thread import Thread
from .post import Post, PostStatus, PUBLISHABLE_STATUSES
from .publication_target import PublicationTarget, PublicationStatus
from .metric_snapshot import MetricSnapshot
from .metric_fetch_log import MetricFetchLog
