import json
import logging
import time

logger = logging.getLogger("lostfound.events")


def log_event(component: str, operation: str, **kwargs):
    """Log structured JSON event for a pipeline step"""
    log_data = {
        "ts": time.time(),
        "module": component,
        "operation": operation,
        **kwargs
    }
    logger.info(f"EVENT: {json.dumps(log_data, default=str)}")
