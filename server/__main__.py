import uvicorn
import logging
import threading
from dotenv import load_dotenv

# Load environment variables before the server modules read them
load_dotenv()

from database import init_db
from server import config
from server.api import app, sweeper

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


if __name__ == "__main__":
    init_db()
    logger.info("Database initialized")

    # Lifecycle sweeper runs beside the API; bids and sweeps may overlap
    sweeper_thread = threading.Thread(target=sweeper.run_loop, name="auction-sweeper", daemon=True)
    sweeper_thread.start()
    logger.info("Sweeper thread started")

    try:
        uvicorn.run(app, host="0.0.0.0", port=config.PORT)
    finally:
        sweeper.stop()
