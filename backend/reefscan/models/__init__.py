"""ORM models; imported here so Base.metadata sees every table."""

from reefscan.models.device import Device
from reefscan.models.usage import DailyUsage, RequestLog

__all__ = ["Device", "RequestLog", "DailyUsage"]
