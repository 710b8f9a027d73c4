import logging
import time

from sqlmodel import Session

from app.config import settings
from app.database import engine
from app.services.order_expiry_service import expire_pending_orders

logger = logging.getLogger(__name__)


def run_once() -> int:
    with Session(engine) as session:
        return expire_pending_orders(session)


def run_forever(interval: int = settings.EXPIRY_SWEEP_INTERVAL_SECONDS):
    logger.info(f"Pending order sweeper started (every {interval}s)")
    while True:
        try:
            run_once()
        except Exception as e:
            logger.exception(f"Pending order sweep failed: {e}")
        time.sleep(interval)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_forever()
