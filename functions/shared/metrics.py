"""
CloudWatch Metrics Helper

Best-effort custom metrics for the billing handlers. A metrics failure
never fails the invocation.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shared.aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "HeartRateBilling")


def _metric_datum(
    metric_name: str,
    value: float,
    unit: str,
    dimensions: Optional[Dict[str, str]],
) -> dict:
    data = {
        "MetricName": metric_name,
        "Value": value,
        "Unit": unit,
        "Timestamp": datetime.now(timezone.utc),
    }
    if dimensions:
        data["Dimensions"] = [{"Name": k, "Value": v} for k, v in dimensions.items()]
    return data


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Example:
        emit_metric("AppleNotifications", dimensions={"Outcome": "linked"})
    """
    try:
        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[_metric_datum(metric_name, value, unit, dimensions)],
        )
    except Exception as e:
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_batch_metrics(metrics: list[Dict[str, Any]]) -> None:
    """
    Emit multiple metrics, 20 per request.

    Args:
        metrics: dicts with metric_name, and optional value, unit, dimensions
    """
    try:
        metric_data = [
            _metric_datum(
                metric["metric_name"],
                metric.get("value", 1.0),
                metric.get("unit", "Count"),
                metric.get("dimensions"),
            )
            for metric in metrics
        ]

        for i in range(0, len(metric_data), 20):
            get_cloudwatch().put_metric_data(
                Namespace=NAMESPACE,
                MetricData=metric_data[i : i + 20],
            )

        logger.debug(f"Emitted {len(metric_data)} metrics in batch")
    except Exception as e:
        logger.warning(f"Failed to emit batch metrics: {e}")
