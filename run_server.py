import uvicorn

from pagecache.config import LOG_LEVEL
from pagecache.logging_config import configure_logging

if __name__ == "__main__":
    configure_logging(LOG_LEVEL)
    uvicorn.run("pagecache.api.app:app", host="0.0.0.0", port=8000, reload=False)
