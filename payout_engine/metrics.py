import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from tortoise.expressions import Q

from .models import Metric, MetricType
from .config import get_current_time


logger = logging.getLogger(__name__)


async def track_metric(
    metric_type: MetricType,
    value: float = 1.0,
    entity_id: Optional[int] = None,
    user_id: Optional[int] = None,
    metadata: Optional[Dict] = None
) -> Optional[Metric]:
    """
    Track a metric event in the database.

    Args:
        metric_type: Type of metric being tracked
        value: Numeric value for the metric (default is 1.0 for count-based metrics)
        entity_id: Optional ID of the related entity (payout, transaction, etc.)
        user_id: Optional vendor ID
        metadata: Optional additional contextual data as a dictionary

    Returns:
        The created Metric object
    """
    try:
        metric = await Metric.create(
            metric_type=metric_type,
            value=value,
            entity_id=entity_id,
            user_id=user_id,
            metadata=metadata
        )
        logger.info(f"Tracked metric: {metric_type.value}, value: {value}, entity_id: {entity_id}, user_id: {user_id}")
        return metric
    except Exception as e:
        logger.error(f"Error tracking metric {metric_type.value}: {str(e)}")
        # We don't want to break the application flow if metrics tracking fails
        return None


async def get_metrics_report(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    metric_types: Optional[List[MetricType]] = None
) -> Dict:
    """
    Count and sum metric events per type for the specified time period.

    Args:
        start_date: Start date for the report (defaults to 30 days ago)
        end_date: End date for the report (defaults to now)
        metric_types: Optional list of metric types to include (defaults to all)
    """
    end_date = end_date or get_current_time()
    start_date = start_date or end_date - timedelta(days=30)

    base_query = Q(timestamp__gte=start_date) & Q(timestamp__lte=end_date)
    if metric_types:
        base_query &= Q(metric_type__in=list(metric_types))

    counts = {}
    totals = {}
    for metric in await Metric.filter(base_query).all():
        key = metric.metric_type.value
        counts[key] = counts.get(key, 0) + 1
        totals[key] = round(totals.get(key, 0.0) + metric.value, 2)

    return {
        "time_period": {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        },
        "counts": counts,
        "totals": totals,
    }
