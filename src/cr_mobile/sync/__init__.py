"""__init__ para sync"""

from cr_mobile.sync.collector_client import CollectorClient
from cr_mobile.sync.delegate import ReporterDelegate, UploadOutcome
from cr_mobile.sync.pipeline import ReportPipeline
from cr_mobile.sync.report_scheduler import ReportScheduler
from cr_mobile.sync.retry_policy import RetryPolicy
from cr_mobile.sync.uploader import Uploader

__all__ = [
    "CollectorClient",
    "ReporterDelegate",
    "UploadOutcome",
    "ReportPipeline",
    "ReportScheduler",
    "RetryPolicy",
    "Uploader",
]
