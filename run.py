import asyncio
import sys
import uvicorn
from fleetctl.core.config import get_settings

def main():
    if sys.platform == 'win32':
        # Force ProactorEventLoop for subprocess support
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    settings = get_settings()
    uvicorn.run(
        "fleetctl.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )

if __name__ == "__main__":
    main()
