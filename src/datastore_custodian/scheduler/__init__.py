"""Job scheduler: cron-driven recurring maintenance actions.

Jobs are registered by name, matched minute by minute against five-field
cron expressions, and dispatched concurrently so a slow or failing job never
delays another.
"""

from datastore_custodian.scheduler.cron import CronSchedule, floor_to_minute
from datastore_custodian.scheduler.scheduler import (
    JobScheduler,
    JobStatus,
    ScheduledJob,
    SqlCommand,
)

__all__ = [
    "CronSchedule",
    "JobScheduler",
    "JobStatus",
    "ScheduledJob",
    "SqlCommand",
    "floor_to_minute",
]
