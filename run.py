"""Run the steward HTTP admin API."""

import uvicorn

from steward.config import ensure_unprivileged, load_config

if __name__ == "__main__":
    ensure_unprivileged()
    config = load_config()
    uvicorn.run(
        "steward.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
