import argparse
import time
import logging
import sys

from database.config import SessionLocal, init_db

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)


def run_reconciliation() -> int:
    from services.reconciliation import ReconciliationService

    logging.info("Starting reconciliation pass...")
    db = SessionLocal()
    try:
        findings = ReconciliationService(db).run()
    finally:
        db.close()
    logging.info(f"Reconciliation complete. {len(findings)} finding(s).")
    return 1 if findings else 0


def start_worker():
    from services.dispatch_scheduler import get_dispatch_scheduler, VERIFY_ORDER_JOB
    from services.verification_service import VerificationJobProcessor

    logging.info("Starting verification worker...")
    scheduler = get_dispatch_scheduler()
    scheduler.register(VERIFY_ORDER_JOB, VerificationJobProcessor())
    scheduler.start()

    try:
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        logging.info("Stopping verification worker...")
    finally:
        scheduler.shutdown()


def serve(host: str, port: int):
    import uvicorn
    uvicorn.run("server:app", host=host, port=port)


def main():
    parser = argparse.ArgumentParser(description="ShillMarket order pipeline")
    parser.add_argument("--mode", choices=["serve", "worker", "reconcile", "initdb"], default="serve",
                        help="Run the API (with an in-process worker), a standalone verification worker, "
                             "one reconciliation pass, or create tables")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    if args.mode == "initdb":
        init_db()
    elif args.mode == "reconcile":
        sys.exit(run_reconciliation())
    elif args.mode == "worker":
        init_db()
        start_worker()
    else:
        serve(args.host, args.port)


if __name__ == "__main__":
    main()
