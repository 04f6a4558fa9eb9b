"""Command-line runner for the clinic encounter engine.

Initializes the database, seeds rooms and beds, and drains the outbox of
side effects that could not be delivered when their operation committed.
"""

import argparse
import logging
import sys
import time

from .config import config
from .errors import ClinicError
from .models import ResourceKind
from .service import ClinicService

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def drain_once(service: ClinicService) -> dict[str, int]:
    """Deliver pending outbox effects once."""
    stats = service.drain_outbox()
    total = sum(stats.values())
    if total:
        logger.info(
            f"Drained {total} effect(s): {stats['delivered']} delivered, "
            f"{stats['retry']} retry, {stats['failed']} failed"
        )
    else:
        logger.info("No pending effects")
    return stats


def run_daemon(service: ClinicService, interval: int) -> None:
    """Drain the outbox continuously."""
    logger.info(f"Starting outbox drain loop (interval: {interval}s)")

    while True:
        try:
            drain_once(service)
        except ClinicError as e:
            logger.exception(f"Error draining outbox: {e}")

        time.sleep(interval)


def print_status(service: ClinicService) -> None:
    queue = service.get_patient_queue()
    print(f"\nPatients in clinic: {len(queue)}")
    for item in queue:
        print(
            f"  {item['encounter_number']}  {item['patient_name'] or item['patient_id']:<24} "
            f"{item['workflow_status']:<24} {item['triage_priority']:<6} "
            f"{item['room'] or '-'}"
        )

    resources = service.list_resources()
    free = sum(1 for r in resources if r.is_available)
    print(f"\nRooms/beds: {free} of {len(resources)} free")

    counts = service.dispatcher.counts()
    print(
        f"Outbox: {counts['pending']} pending, {counts['delivered']} delivered, "
        f"{counts['failed']} failed"
    )


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Clinic encounter orchestration: setup and outbox delivery."
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help=f"SQLite database path (default: {config.CLINIC_DB_PATH})",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the database schema and exit",
    )
    parser.add_argument(
        "--seed-rooms",
        type=int,
        metavar="N",
        help="Create exam rooms Room 1..N (existing labels are skipped)",
    )
    parser.add_argument(
        "--seed-beds",
        type=int,
        metavar="N",
        help="Create short-stay beds Bed 1..N (existing labels are skipped)",
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Deliver pending outbox effects once",
    )
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Keep draining the outbox until interrupted",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=config.OUTBOX_POLL_SECONDS,
        help=f"Seconds between drains in continuous mode (default: {config.OUTBOX_POLL_SECONDS})",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the patient queue, room availability and outbox counts",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        service = ClinicService(db_path=args.db_path, auto_drain=False)
    except ClinicError as e:
        logger.error(f"Cannot open clinic database: {e}")
        return 1

    logger.info("Clinic Encounter Engine")
    logger.info(f"  Database: {service.db.db_path}")

    if args.init_db:
        logger.info("Database initialized")
        return 0

    if args.seed_rooms:
        created = service.resources.seed(ResourceKind.ROOM, args.seed_rooms)
        logger.info(f"Created {len(created)} room(s)")
    if args.seed_beds:
        created = service.resources.seed(ResourceKind.BED, args.seed_beds)
        logger.info(f"Created {len(created)} bed(s)")

    if args.status:
        print_status(service)

    if args.continuous:
        try:
            run_daemon(service, args.interval)
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        return 0

    if args.drain:
        stats = drain_once(service)
        return 1 if stats["failed"] else 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
