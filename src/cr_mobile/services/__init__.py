"""__init__ para services"""

from cr_mobile.services.report_store import ReportStore
from cr_mobile.services.consent_gate import ConsentGate
from cr_mobile.services.capture import CrashHandler

__all__ = [
    "ReportStore",
    "ConsentGate",
    "CrashHandler",
]
