import logging
import time
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from circulation.config import settings
from circulation.db import SessionLocal, engine, init_db
from circulation.models import Loan
from circulation.services import OverdueSweeper

logger = logging.getLogger(__name__)


def run_once(
    session_factory: Optional[sessionmaker] = None,
    sweeper: Optional[OverdueSweeper] = None,
) -> List[Loan]:
    """One sweep cycle on a fresh session."""
    session_factory = session_factory or SessionLocal
    sweeper = sweeper or OverdueSweeper()
    with session_factory() as db:
        late = sweeper.sweep(db)
    for loan in late:
        logger.info(
            "[SWEEP] loan=%s patron=%s book=%s due=%s -> OVERDUE",
            loan.id,
            loan.patron_id,
            loan.book_id,
            loan.due_date.isoformat(),
        )
    return late


def run() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db(engine)
    sweeper = OverdueSweeper()
    logger.info("[WORKER] started, sweeping every %ss", settings.sweep_interval_seconds)

    while True:
        try:
            late = run_once(SessionLocal, sweeper)
            logger.info("[SWEEP] cycle done, %d loan(s) reclassified", len(late))
        except Exception:
            # a failed cycle must not stop the loop; the next one retries
            logger.exception("[LOOP] sweep cycle failed")
        time.sleep(settings.sweep_interval_seconds)


if __name__ == "__main__":
    run()
