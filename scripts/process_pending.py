"""
Render every submission waiting in the staging area's ``new`` phase.

Run from the repository root:
    python scripts/process_pending.py
"""
import asyncio
import sys

from taskflow.config import get_settings
from taskflow.database import close_db
from taskflow.engines.submission.pipeline import SubmissionPipeline
from taskflow.logging_config import configure_logging


async def main() -> int:
    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )

    pipeline = SubmissionPipeline(settings)
    pipeline.store.ensure_layout()
    try:
        results = await pipeline.process_pending()
    finally:
        await pipeline.close()
        await close_db()

    print(f"=== {len(results)} pending submission(s) ===")
    for key, outcome in results.items():
        print(f"  {key}: {outcome}")

    failed = [key for key, outcome in results.items() if outcome == "failed"]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
