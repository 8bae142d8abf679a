"""Launch the routing API with uvicorn."""
import uvicorn
from config.settings import settings

if __name__ == "__main__":
    # single worker: the health monitor and sync coordinator live in-process
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        workers=1,
    )
