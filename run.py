import uvicorn

from fragransia.config import get_settings
from fragransia.logger import get_logger

logger = get_logger("run")

if __name__ == '__main__':
    settings = get_settings()
    logger.info("Starting Fragransia API at http://localhost:%d (%s)", settings.port, settings.environment)
    uvicorn.run("fragransia.app:app", host="0.0.0.0", port=settings.port, reload=settings.is_development)
