"""Infrastructure modules for the trade lifecycle service"""

from .job_scheduler import JobScheduler  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .notifications import NotificationService  # noqa: F401
from .price_quotes import PriceQuoteService  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"JobScheduler",
	"MetricsRecorder",
	"NotificationService",
	"PriceQuoteService",
	"StateStore",
]
