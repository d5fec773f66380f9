"""
Manual reconciliation of paid invoices whose visits were left open.

Reading an invoice already repairs its visit; this script sweeps the invoices
nobody is looking at. Use it after an incident (e.g. the visit table was
unavailable while payments were being taken) or from a cron job.

Usage:
    python scripts/reconcile_paid_invoices.py [--limit 500]
"""
import argparse
import logging
import sys
import os

# Add the parent directory to sys.path to allow imports from src
sys.path.append(os.path.join(os.path.dirname(__file__), '../src'))

from core.database import get_db_context
from services.billing_gateways import LoggingAuditGateway, LoggingNotificationGateway, SqlVisitGateway
from services.invoice_completion_workflow import InvoiceCompletionWorkflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Complete visits attached to paid invoices")
    parser.add_argument("--limit", type=int, default=500, help="Maximum invoices to inspect")
    args = parser.parse_args()

    print("Starting paid-invoice reconciliation...")
    try:
        with get_db_context() as db:
            workflow = InvoiceCompletionWorkflow(
                db,
                visit_gateway=SqlVisitGateway(db),
                notification_gateway=LoggingNotificationGateway(),
                audit_gateway=LoggingAuditGateway(),
            )
            repaired = workflow.reconcile_paid_invoices(limit=args.limit)
        print(f"Reconciliation completed. Repaired {repaired} visit(s).")
        return 0
    except Exception as e:
        print(f"Error during reconciliation: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
