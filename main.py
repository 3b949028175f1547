"""
Main entry point for the ytdl-jobs service.

This script initializes the configuration, sets up logging, recovers jobs from
disk, and runs the job controller. URLs given on the command line are queued
and the script exits once they have all finished.
"""

import sys
import logging
import asyncio
from types import TracebackType
from typing import List, Type

from ytdl_jobs._version import __version__
from ytdl_jobs.logging_config import setup_logging
from ytdl_jobs.config import ConfigManager
from ytdl_jobs.constants import CONFIG_FILE
from ytdl_jobs.controller import JobController

def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


async def run(controller: JobController, urls: List[str]) -> int:
    """Starts the controller, queues `urls`, and waits for them to finish."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)

    await controller.start()
    try:
        job_ids = [await controller.submit(url) for url in urls]
        if not job_ids:
            logging.info("No URLs given; serving queue API until interrupted.")
            await asyncio.Event().wait()
        await controller.download_manager.wait_idle()

        failures = 0
        for job_id in job_ids:
            summary = await controller.get_job(job_id)
            if summary['status'] == 'completed':
                logging.info(f"{summary['url']} -> {summary['output_name']}")
            else:
                failures += 1
                logging.error(f"{summary['url']} failed: {summary['error_message']}")
        return 1 if failures else 0
    finally:
        await controller.shutdown()


if __name__ == "__main__":
    """
    Main entry point for the service.
    """
    # 1. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()

    # 2. Use the configured log level
    setup_logging(config.log_level)
    logging.info(f"ytdl-jobs {__version__} starting")

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    # 4. Create the Controller, which holds all job logic
    controller = JobController(config, config_manager)

    try:
        sys.exit(asyncio.run(run(controller, sys.argv[1:])))
    except KeyboardInterrupt:
        logging.info("Service interrupted by user.")
