"""faultline: error tracking, alerting, escalation and notification delivery."""

from faultline.factory import Pipeline, create_pipeline

__version__ = "0.1.0"

__all__ = ["Pipeline", "create_pipeline", "__version__"]
