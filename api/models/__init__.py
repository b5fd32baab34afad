from api.models.tracking import AnalyticsSession, Visit, ScrollEvent, SectionEvent  # noqa: F401
from api.models.aggregates import (  # noqa: F401
    BasicPageViewAggregate,
    DailyAggregate,
    WeeklyAggregate,
)
