"""
Management command to run the scheduled billing lifecycle.

Runs expire -> reconcile -> resume. Intended to be called daily by cron or
a scheduled task; single phases can be run on their own (e.g. reconcile
hourly).

Usage:
    python manage.py run_billing_lifecycle
    python manage.py run_billing_lifecycle --phase reconcile
"""

import uuid

from django.core.management.base import BaseCommand

from apps.billing.constants import LifecyclePhase
from apps.billing.lifecycle import run_daily_lifecycle
from apps.billing.reconciliation import ReconciliationReport
from apps.core.logging import bind_contextvars, clear_contextvars


class Command(BaseCommand):
    help = "Expire lapsed subscriptions, reconcile missed payments and resume paused subscriptions"

    def add_arguments(self, parser):
        parser.add_argument(
            "--phase",
            action="append",
            choices=[phase.value for phase in LifecyclePhase],
            help="Run only this phase (repeatable). Phases always run in canonical order.",
        )

    def handle(self, *args, **options):
        phases = [LifecyclePhase(phase) for phase in options["phase"] or []]
        bind_contextvars(run_id=uuid.uuid4().hex)
        try:
            results = run_daily_lifecycle(phases=phases or None)
        finally:
            clear_contextvars()

        for phase, result in results.items():
            if isinstance(result, ReconciliationReport):
                self.stdout.write(
                    f"{phase}: {result.recovered_invoices} invoice(s) recovered, "
                    f"{result.reactivated_subscriptions} reactivated, "
                    f"{result.recovered_subscriptions} pending recovered, "
                    f"{result.abandoned_subscriptions} abandoned, "
                    f"{result.gateway_errors} gateway error(s)"
                )
                if result.unreconcilable:
                    self.stdout.write(
                        self.style.WARNING(
                            f"{len(result.unreconcilable)} item(s) need manual review"
                        )
                    )
            else:
                self.stdout.write(f"{phase}: {result} subscription(s)")

        self.stdout.write(self.style.SUCCESS("Billing lifecycle complete"))
