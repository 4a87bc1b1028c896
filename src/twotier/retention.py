"""Log retention classes.

CloudWatch Logs only accepts an enumerated set of retention periods. Requests
are rounded down to the nearest supported period and floored at the minimum,
so a plan never keeps data longer than asked for (except at the floor).
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class RetentionClass(int, Enum):
    """Supported retention periods in days.

    Member names match ``aws_cdk.aws_logs.RetentionDays`` so the CDK layer can
    look them up by name.
    """
    ONE_DAY = 1
    THREE_DAYS = 3
    FIVE_DAYS = 5
    ONE_WEEK = 7
    TWO_WEEKS = 14
    ONE_MONTH = 30
    TWO_MONTHS = 60
    THREE_MONTHS = 90
    FOUR_MONTHS = 120
    FIVE_MONTHS = 150
    SIX_MONTHS = 180
    ONE_YEAR = 365
    THIRTEEN_MONTHS = 400
    EIGHTEEN_MONTHS = 545
    TWO_YEARS = 731
    FIVE_YEARS = 1827
    TEN_YEARS = 3653

    @property
    def days(self) -> int:
        return int(self.value)


SUPPORTED_DAYS = tuple(sorted(member.value for member in RetentionClass))


def resolve(requested_days: int) -> RetentionClass:
    """Map a requested number of days to a supported retention class.

    Returns the exact match when one exists, otherwise the largest supported
    period below the request. Requests under the smallest supported period
    resolve to that smallest period.
    """
    requested = int(requested_days)
    chosen = SUPPORTED_DAYS[0]
    for days in SUPPORTED_DAYS:
        if days > requested:
            break
        chosen = days

    resolved = RetentionClass(chosen)
    if resolved.days != requested:
        logger.debug(f"Retention of {requested} days resolved to {resolved.name} ({resolved.days} days)")
    return resolved
