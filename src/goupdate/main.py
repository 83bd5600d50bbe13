"""Main entry point for goupdate."""

import asyncio
import sys

from goupdate.client import HTTPTimeouts, create_http_client
from goupdate.config import get_settings
from goupdate.deadline import Deadline
from goupdate.errors import UpdateError
from goupdate.logging import get_logger, setup_logging
from goupdate.pipeline import PipelineStatus, build_pipeline


async def main() -> int:
    """Run one update pass; returns the process exit status."""
    setup_logging()
    log = get_logger("goupdate.main")

    settings = get_settings()
    log.info(
        "starting_goupdate",
        environment=settings.environment,
        install_root=str(settings.install_root),
        bin_dir=str(settings.bin_dir),
    )

    deadline = Deadline.after(settings.pipeline_timeout)
    async with create_http_client(HTTPTimeouts.from_settings(settings)) as client:
        pipeline = build_pipeline(settings, client)
        try:
            result = await pipeline.run(deadline)
        except UpdateError as exc:
            log.error("update_failed", error=str(exc), error_type=type(exc).__name__)
            return 1

    log.info("update_finished", **result.to_dict())
    if result.status is PipelineStatus.UPDATED:
        print(pipeline.installer.path_instructions())
    return 0


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
