"""Runtime settings read from environment variables."""

import os
from datetime import tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


class BellDeskConfig:
    """Queue and synchronization settings."""

    RECONCILE_INTERVAL_SECONDS = float(os.environ.get("RECONCILE_INTERVAL_SECONDS", "15"))
    LOCAL_ROSTER_PATH = os.environ.get("LOCAL_ROSTER_PATH", ".belldesk/local_bellmen.json")
    BELLDESK_TIMEZONE = os.environ.get("BELLDESK_TIMEZONE", "").strip()
    ACTIVITY_LOG_ENABLED = os.environ.get("ACTIVITY_LOG_ENABLED", "true").lower() == "true"

    @classmethod
    def timezone(cls) -> Optional[tzinfo]:
        """Configured hotel timezone, or None for the system local time."""
        if not cls.BELLDESK_TIMEZONE:
            return None
        return ZoneInfo(cls.BELLDESK_TIMEZONE)
