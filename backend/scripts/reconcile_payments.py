import argparse

from loguru import logger

from talentvote.core.config import get_settings
from talentvote.db import SessionLocal, init_db
from talentvote.domain import DomainError
from talentvote.services.notifications import SmtpReceiptNotifier
from talentvote.services.payments import AuthorizeNetGateway
from talentvote.services.purchase_service import PurchaseService, format_cents


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="List captured charges whose votes were never credited, and optionally credit them"
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Credit the votes for every outstanding charge instead of only listing them",
    )
    parser.add_argument("--limit", type=int, default=None, help="Handle at most N outstanding charges")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    init_db()

    failures = 0
    with AuthorizeNetGateway(config=settings) as gateway:
        session = SessionLocal()
        try:
            service = PurchaseService(
                session,
                gateway=gateway,
                notifier=SmtpReceiptNotifier(settings),
                settings=settings,
            )
            events = service.pending_reconciliations()
            if args.limit:
                events = events[: args.limit]
            logger.info("Found {} uncredited charges", len(events))

            for event in events:
                logger.info(
                    "Transaction {} | competition {} contestant {} | {} | logged {} | {}",
                    event.transaction_id,
                    event.competition_id,
                    event.contestant_id,
                    format_cents(event.amount_cents or 0, settings.currency),
                    event.logged_at,
                    event.reason or event.event_type,
                )
                if not args.apply:
                    continue
                try:
                    purchase, replayed = service.reconcile(event)
                except DomainError as exc:
                    failures += 1
                    logger.error("Could not credit transaction {}: {}", event.transaction_id, exc)
                    continue
                if replayed:
                    logger.info("Transaction {} was already credited", event.transaction_id)
                else:
                    logger.info(
                        "Credited {} votes for transaction {}", purchase.vote_count, event.transaction_id
                    )
        finally:
            session.close()

    if not args.apply:
        logger.info("Dry run only; re-run with --apply to credit these charges")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
