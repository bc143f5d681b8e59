"""Timed multi-level escalation of open alerts."""

from faultline.escalation.engine import EscalationEngine, trigger_matches

__all__ = ["EscalationEngine", "trigger_matches"]
