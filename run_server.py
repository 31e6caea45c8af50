"""Run the TenantLock access API with adapters and the state refresher started."""

import logging
import os

from app import create_app

logger = logging.getLogger("tenantlock.server")


def main() -> None:
    app = create_app(bootstrap_runtime=True)
    host = os.environ.get("TENANTLOCK_HOST", "0.0.0.0")
    port = int(os.environ.get("FLASK_RUN_PORT", 8000))

    logger.info("Serving TenantLock on http://%s:%s", host, port)
    # Dispatches block on vendor calls; serve each request on its own thread.
    app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
