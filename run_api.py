"""Run the Audit Ledger API server."""

import uvicorn

from ledger.api.config import Settings

if __name__ == "__main__":
    settings = Settings()
    uvicorn.run(
        "ledger.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
