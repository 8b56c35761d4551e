"""
Lambda handler for the replica autoscaler.
Runs a single orchestration cycle per invocation; schedule it with an
EventBridge rule (e.g. rate(2 minutes)) and use STATE_BACKEND=dynamodb so
state and the per-service scaling lock survive between invocations.
"""

import asyncio
import json
import logging

from replica_autoscaler.bootstrap import build_orchestrator
from replica_autoscaler.config import load_config
from replica_autoscaler.errors import ConfigError

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)


def lambda_handler(event, context):
    """
    Main Lambda handler for autoscaling.

    For every managed service this function:
    1. Fetches metrics from Prometheus
    2. Loads the service's scaling state
    3. Makes a scaling decision and validates it against the limits
    4. Scales the runtime, then updates routing
    5. Records and notifies the outcome
    """
    logger.info("Replica autoscaler Lambda started")
    logger.info(f"Event: {json.dumps(event, default=str)}")

    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Invalid autoscaler configuration: {e}")
        return {
            "statusCode": 500,
            "body": json.dumps({"error": str(e)})
        }

    logger.setLevel(config.log_level)
    orchestrator = build_orchestrator(config)
    events = asyncio.run(orchestrator.run_once())

    return {
        "statusCode": 200,
        "body": json.dumps({
            "message": f"Orchestration cycle completed for {len(events)} service(s)",
            "events": [e.to_dict() for e in events],
        })
    }
