"""Field telemetry server: NiceGUI dashboard and the device REST API in one process."""

import logging
import logging.handlers
import os

from nicegui import app, ui

from api import router
from database import init_db

# ---------------------------------------------------------------------------
# Logging: console plus a rotating file the /logs page tails
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "field-telemetry.log")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3,
        ),
    ],
)
logger = logging.getLogger("fieldtelemetry")

for noisy in ("watchfiles", "multipart", "shapely"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

# /api/reports, metrics, attendance and active-subject routes share the UI server
app.include_router(router)
app.on_startup(init_db)

# Dashboard routes register on import
import pages  # noqa: F401, E402

logger.info("Starting field telemetry server (log file %s)", LOG_FILE)
ui.run(
    title="Field Telemetry",
    port=int(os.environ.get("PORT", "8080")),
    storage_secret=os.environ.get("STORAGE_SECRET", "change-me-in-production"),
    show=False,
)
