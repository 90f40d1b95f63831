"""
Feature flags for the live scoring service.

Centralizes feature toggle configuration so the websocket stream and the
automatic prize settlement can be switched off without a redeploy.
"""

import os
from typing import Dict
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class FeatureFlags:
    """Feature flags for optional live-service behaviour."""

    # Real-time stock updates over websocket
    ENABLE_LIVE_WS: bool = os.getenv("ENABLE_LIVE_WS", "true").lower() == "true"

    # Settlement from the background loop (manual runs are unaffected)
    ENABLE_AUTO_SETTLEMENT: bool = os.getenv("ENABLE_AUTO_SETTLEMENT", "true").lower() == "true"

    # Daily screener scoring pass
    ENABLE_DAILY_SCREENER: bool = os.getenv("ENABLE_DAILY_SCREENER", "true").lower() == "true"

    @classmethod
    def to_dict(cls) -> Dict[str, bool]:
        """Return all flags as dictionary for API responses."""
        return {
            "enableLiveWs": cls.ENABLE_LIVE_WS,
            "enableAutoSettlement": cls.ENABLE_AUTO_SETTLEMENT,
            "enableDailyScreener": cls.ENABLE_DAILY_SCREENER,
        }


# Global instance
feature_flags = FeatureFlags()
