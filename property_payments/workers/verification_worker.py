"""
Verification background worker.

Polls gateways for transactions stuck in processing, for deliveries where the
webhook never arrived. Records are only moved by the gateway's answer; a
record the gateway has not decided stays processing.
"""
import asyncio
import signal
import time
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from property_payments.config import Settings, get_settings
from property_payments.core.engine import PaymentEngine
from property_payments.core.enums import TransactionStatus
from property_payments.core.exceptions import PaymentEngineError
from property_payments.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from property_payments.database.store import utcnow
from property_payments.monitoring.logging import setup_logging
from property_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_verification_pass(
    engine: PaymentEngine, settings: Optional[Settings] = None
) -> Dict[str, int]:
    """
    Verify one batch of processing transactions.

    Returns:
        Counts per result: completed, failed, undecided, error
    """
    settings = settings or engine.settings
    started = time.time()
    cutoff = utcnow() - timedelta(seconds=settings.verification_min_age_seconds)
    candidates = await engine.store.list_by_status(
        TransactionStatus.PROCESSING,
        updated_before=cutoff,
        limit=settings.verification_batch_size,
    )

    summary = {"completed": 0, "failed": 0, "undecided": 0, "error": 0}
    for candidate in candidates:
        try:
            transaction = await engine.verify_transaction(candidate.id)
        except PaymentEngineError as e:
            # One gateway failing must not stop the batch
            logger.warning(
                "verification_failed",
                transaction_id=str(candidate.id),
                gateway=candidate.gateway,
                error_code=e.error_code,
                error=e.message,
            )
            result = "error"
        else:
            if transaction.status == TransactionStatus.COMPLETED.value:
                result = "completed"
            elif transaction.status == TransactionStatus.FAILED.value:
                result = "failed"
            else:
                result = "undecided"

        summary[result] += 1
        metrics.record_verification_result(result)

    duration = time.time() - started
    metrics.set_verification_pass(duration)
    logger.info(
        "verification_pass_completed",
        candidates=len(candidates),
        duration_seconds=duration,
        **summary,
    )
    return summary


async def start_verification_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the verification worker.

    Runs a pass every interval until SIGINT or SIGTERM.

    Args:
        interval_seconds: Seconds between passes (default from settings)
    """
    settings = get_settings()
    setup_logging(settings)
    interval = interval_seconds or settings.verification_interval_seconds

    logger.info("verification_worker_starting", interval_seconds=interval)

    db_engine = create_engine_from_settings(settings)
    await init_db(db_engine)
    engine = PaymentEngine.from_settings(
        settings, session_factory=create_session_factory(db_engine)
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("verification_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_verification_pass(engine, settings)
            except Exception as e:
                logger.error("verification_pass_error", error=str(e))
                # Continue running even if one pass fails

            # Wait for the next pass (with periodic checks for shutdown signal)
            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await engine.close()
        await db_engine.dispose()
        logger.info("verification_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Processing transaction verification worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between verification passes"
    )
    args = parser.parse_args()

    asyncio.run(start_verification_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
