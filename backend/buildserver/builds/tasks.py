import logging

import dramatiq

from .broker import broker
from .exceptions import BuildNotFound

logger = logging.getLogger("build_worker")

BUILD_QUEUE = "builds"


@dramatiq.actor(queue_name=BUILD_QUEUE, max_retries=0, broker=broker)
def execute_build(build_id):
    """Run an admitted build through its pipeline and signing."""
    from .apps import get_build_service

    logger.info(f"Task started for build id={build_id}")
    service = get_build_service()
    service.run_admitted(build_id)
    try:
        status = service.get_status(build_id).status
    except BuildNotFound:
        logger.warning(f"Build {build_id} disappeared before it finished")
        return
    logger.info(f"Build {build_id} finished with status={status}")
