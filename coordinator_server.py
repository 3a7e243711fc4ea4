#!/usr/bin/env python3
"""Entry point for running the content coordinator tick loop."""
import argparse
import asyncio
import os
import signal
import sys

# Add src to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv
load_dotenv()

from src.core.config import load_settings
from src.core.logging import configure_logging
from src.coordinator import Coordinator, CoordinatorRunner
from src.monitoring import LogNotifier, WebhookNotifier


async def run_coordinator(worker_id: str = None, once: bool = False) -> None:
    settings = load_settings()
    notifiers = [LogNotifier()]
    webhook_url = os.getenv("CONTENT_COORDINATOR_ALERT_WEBHOOK")
    if webhook_url:
        notifiers.append(WebhookNotifier(webhook_url))

    coordinator = Coordinator(settings, notifiers=notifiers)
    runner = CoordinatorRunner(coordinator, worker_id=worker_id)
    try:
        if once:
            result = await runner.run_once()
            print(result.outcome.value)
            return

        stopping = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stopping.set)

        await runner.start()
        await stopping.wait()
        await runner.stop()
    finally:
        coordinator.db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Content coordinator")
    parser.add_argument("--worker-id", default=None)
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    parser.add_argument("--json-logs", action="store_true")
    args = parser.parse_args()

    configure_logging(level=args.log_level, json_output=args.json_logs)
    asyncio.run(run_coordinator(worker_id=args.worker_id, once=args.once))


if __name__ == "__main__":
    main()
