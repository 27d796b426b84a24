import sys
import os
import logging

# Ensure the project root is importable when run as a script
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from pagecache.config import LOG_LEVEL
from pagecache.conversion.worker import ConversionWorker
from pagecache.db import get_session
from pagecache.logging_config import configure_logging
from pagecache.storage import get_storage


def main():
    configure_logging(LOG_LEVEL)
    worker = ConversionWorker(get_session(), get_storage())

    processed = 0
    while True:
        job = worker.run_once()
        if job is None:
            break
        processed += 1
        print("-" * 50)
        print(f"JOB: {job.id}")
        print(f"DOCUMENT: {job.document_id}")
        print(f"STATUS: {job.status.value} ({job.total_pages or 0} pages)")
        if job.error_message:
            print(f"ERROR: {job.error_message}")
        print("-" * 50)

    logging.getLogger("pagecache").info(f"Queue drained after {processed} jobs")


if __name__ == "__main__":
    main()
