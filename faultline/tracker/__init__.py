"""Error capture, fingerprinting, grouping and analytics."""

from faultline.tracker.analytics import ErrorAnalytics, compute_analytics, health_score
from faultline.tracker.fingerprint import Fingerprinter
from faultline.tracker.grouping import ErrorGrouper
from faultline.tracker.tracker import ErrorTracker

__all__ = [
    "ErrorAnalytics",
    "ErrorGrouper",
    "ErrorTracker",
    "Fingerprinter",
    "compute_analytics",
    "health_score",
]
