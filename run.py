"""Simple script to run the server"""

import uvicorn
from doorrelay.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "doorrelay.main:asgi_app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
