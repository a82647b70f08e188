#!/usr/bin/env python3
"""
Worker process — runs job handlers against the shared broker.

Usage:
    python scripts/run_workers.py                              # every queue + recurring jobs
    python scripts/run_workers.py --queues logo-generation,mockup-generation
    python scripts/run_workers.py --no-schedule                # workers only
    python scripts/run_workers.py --scan-abandonment           # one detector pass, then exit
"""
import argparse
import asyncio
import json
import os
import signal
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv

from config.settings import load_settings
from core.orchestrator import JobSystem

logger = structlog.get_logger()


async def run(queues: list[str], schedule: bool) -> None:
    system = JobSystem(load_settings())
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await system.start(queues=queues or None, run_workers=True, schedule=schedule)
    logger.info("worker_process_ready", queues=queues or "all", schedule=schedule)
    await stop.wait()

    logger.info("worker_process_shutting_down")
    await system.stop()


async def scan_abandonment() -> dict:
    system = JobSystem(load_settings())
    await system.broker.connect()
    try:
        return await system.run_abandonment_scan()
    finally:
        await system.connectors.close()
        await system.credit_store.close()
        await system.broker.close()


def main():
    parser = argparse.ArgumentParser(description="BrandFlow job workers")
    parser.add_argument("--queues", default="", help="Comma-separated queues to consume (default: all)")
    parser.add_argument("--no-schedule", action="store_true", help="Do not schedule recurring maintenance jobs")
    parser.add_argument("--scan-abandonment", action="store_true", help="Run one abandonment scan and exit")
    args = parser.parse_args()

    load_dotenv()

    if args.scan_abandonment:
        report = asyncio.run(scan_abandonment())
        print(json.dumps(report, indent=2))
        return

    queues = [q.strip() for q in args.queues.split(",") if q.strip()]
    asyncio.run(run(queues, schedule=not args.no_schedule))


if __name__ == "__main__":
    main()
