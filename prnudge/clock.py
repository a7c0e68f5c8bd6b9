"""Team-local time: timezone and business hours per installation."""

import logging
from datetime import tzinfo

import pytz

from prnudge.models import BusinessHours

logger = logging.getLogger("prnudge.clock")


class TimezoneResolver:
    """Resolves an installation's timezone and business hours.

    Stored preferences win; anything missing, unparsable or unset falls back
    to the configured defaults. Resolution never raises.
    """

    def __init__(self, store, default_timezone: str, default_business_hours: BusinessHours):
        """Initialize timezone resolver.

        Args:
            store: Storage exposing find_installation_timezone(installation_id).
            default_timezone: IANA timezone name used as fallback.
            default_business_hours: Business hours used as fallback.
        """
        self.store = store
        self.default_timezone = pytz.timezone(default_timezone)
        self.default_business_hours = default_business_hours

    def resolve(self, installation_id: int) -> tuple[tzinfo, BusinessHours]:
        """Get the timezone and business hours for an installation."""
        try:
            zone_name, hours = self.store.find_installation_timezone(installation_id)
        except Exception as e:
            logger.debug(f"No timezone stored for installation {installation_id}: {e}")
            return self.default_timezone, self.default_business_hours

        if not zone_name or hours is None:
            return self.default_timezone, self.default_business_hours

        # A zero bound means the team never configured its hours
        if hours.start == 0 or hours.end == 0:
            return self.default_timezone, self.default_business_hours

        try:
            zone = pytz.timezone(zone_name)
        except pytz.UnknownTimeZoneError:
            logger.warning(
                f"Installation {installation_id} has unknown timezone '{zone_name}', using default"
            )
            return self.default_timezone, self.default_business_hours

        return zone, hours
