"""
Monitoring and instrumentation utilities for New Relic APM.

Provides a decorator for tracking periodic jobs as background transactions and
helpers for custom business metrics (events processed, submissions rejected,
prizes awarded). Everything is a no-op when the agent is not installed or no
license key is configured.
"""
import functools
import inspect
import logging
from contextlib import nullcontext
from typing import Callable
from arena.config import get_settings

logger = logging.getLogger(__name__)

# Try to import New Relic, but don't fail if not available
try:
    import newrelic.agent
    NEW_RELIC_AVAILABLE = True
except ImportError:
    NEW_RELIC_AVAILABLE = False
    logger.info("New Relic not available - monitoring disabled")


def _enabled() -> bool:
    return NEW_RELIC_AVAILABLE and bool(get_settings().new_relic_license_key)


def _background_task(name: str):
    try:
        return newrelic.agent.BackgroundTask(newrelic.agent.application(), name=name, group="Job")
    except Exception as e:
        logger.debug(f"New Relic tracing error: {e}")
        return nullcontext()


def monitor_transaction(name: str = None):
    """
    Decorator to record a job run as a New Relic background transaction.

    Args:
        name: Custom transaction name (defaults to function name)

    Usage:
        @monitor_transaction("global_aggregation")
        def update_global_leaderboard(self):
            ...
    """
    def decorator(func: Callable) -> Callable:
        transaction_name = name or f"{func.__module__}.{func.__name__}"

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                if not _enabled():
                    return await func(*args, **kwargs)
                with _background_task(transaction_name):
                    return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            if not _enabled():
                return func(*args, **kwargs)
            with _background_task(transaction_name):
                return func(*args, **kwargs)

        return sync_wrapper

    return decorator


def record_custom_metric(metric_name: str, value: float):
    """
    Record a custom metric in New Relic.

    Args:
        metric_name: Name of the metric (e.g., "Custom/Aggregator/Processed")
        value: Metric value
    """
    if _enabled():
        try:
            newrelic.agent.record_custom_metric(metric_name, value)
        except Exception as e:
            logger.debug(f"Failed to record custom metric: {e}")


def record_custom_event(event_type: str, attributes: dict):
    """
    Record a custom event in New Relic.

    Args:
        event_type: Type of event (e.g., "AntiCheatRejection")
        attributes: Dictionary of event attributes
    """
    if _enabled():
        try:
            newrelic.agent.record_custom_event(event_type, attributes)
        except Exception as e:
            logger.debug(f"Failed to record custom event: {e}")
