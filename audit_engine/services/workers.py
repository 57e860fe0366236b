"""
Background consumer workers.

Each worker owns one consumer and ticks on its own interval,
with its own session, so scoring, correlation and aggregation
progress independently and never block the log writer.
"""

import logging
import threading

from sqlalchemy.orm import sessionmaker

from audit_engine.config import Settings, get_settings
from audit_engine.services.aggregation_service import AggregationService
from audit_engine.services.dispatcher import AGGREGATION, CONSUMERS, Dispatcher
from audit_engine.services.reputation import ReputationOracle

logger = logging.getLogger(__name__)


class ConsumerWorker(threading.Thread):

    def __init__(
        self,
        consumer: str,
        session_factory: sessionmaker,
        settings: Settings | None = None,
        oracle: ReputationOracle | None = None,
    ):
        super().__init__(name=f"consumer-{consumer}", daemon=True)
        self.consumer = consumer
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.oracle = oracle
        self.stop_event = threading.Event()

    def tick(self) -> int:
        with self.session_factory() as db:
            dispatcher = Dispatcher(db, self.settings, self.oracle)
            handled = dispatcher.drain(self.consumer)
            if self.consumer == AGGREGATION:
                closed = AggregationService(db, self.settings).rollover()
                db.commit()
                if closed:
                    logger.info(
                        "aggregate rollover",
                        extra={"days": [d.isoformat() for d in closed]},
                    )
            return handled

    def run(self) -> None:
        logger.info("consumer worker started", extra={"consumer": self.consumer})
        while not self.stop_event.wait(self.settings.CONSUMER_POLL_SECONDS):
            try:
                self.tick()
            except Exception:
                # Keep the worker alive; the cursor has not moved.
                logger.exception("consumer tick failed", extra={"consumer": self.consumer})
        logger.info("consumer worker stopped", extra={"consumer": self.consumer})

    def stop(self, timeout: float | None = None) -> None:
        self.stop_event.set()
        self.join(timeout)


def start_workers(
    session_factory: sessionmaker,
    settings: Settings | None = None,
    oracle: ReputationOracle | None = None,
) -> list[ConsumerWorker]:
    workers = [
        ConsumerWorker(name, session_factory, settings, oracle) for name in CONSUMERS
    ]
    for worker in workers:
        worker.start()
    return workers
