"""Failure detection and public-endpoint fallback."""

from nodestack.core.fallback.controller import FallbackController, TroubleshootingInfo
from nodestack.core.fallback.policy import options_for, suggestions_for

__all__ = [
    "FallbackController",
    "TroubleshootingInfo",
    "options_for",
    "suggestions_for",
]
