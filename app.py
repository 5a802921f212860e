from __future__ import annotations
import logging
import os
from pathlib import Path
import dotenv
dotenv.load_dotenv()

from pinpoint.config import load_config
from pinpoint.store_server import create_app

ROOT = Path(__file__).resolve().parent
DATA_DIR = ROOT / "data"

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

cfg = load_config(DATA_DIR / "config.default.json")
if not cfg.secrets.get("marker_store_secret"):
    logging.getLogger(__name__).warning("MARKER_STORE_SECRET is not set, every login will be rejected")

app = create_app(cfg.db_path, cfg.secrets.get("marker_store_secret", ""), cfg.session_hours)


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("APP_HOST", "0.0.0.0")
    port = int(os.getenv("APP_PORT", "8008"))
    uvicorn.run(app, host=host, port=port)
