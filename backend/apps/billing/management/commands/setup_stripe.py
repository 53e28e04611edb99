"""
Management command to set up the Pro product and its monthly price in Stripe.

Run once per environment. Prints the STRIPE_PRO_PRICE_ID to put in .env.
Usage: python manage.py setup_stripe
"""

from django.core.management.base import BaseCommand, CommandError

from apps.billing.stripe_client import get_stripe
from config.settings.base import settings

PRODUCT_QUERY = "metadata['plan']:'pro' AND active:'true'"


class Command(BaseCommand):
    help = "Create the Pro product and recurring price in Stripe"

    def add_arguments(self, parser):
        parser.add_argument(
            "--amount",
            type=int,
            default=settings.BILLING_PRO_AMOUNT,
            help=f"Price per period in minor units (default: {settings.BILLING_PRO_AMOUNT})",
        )
        parser.add_argument(
            "--currency",
            type=str,
            default=settings.BILLING_CURRENCY,
            help=f"Currency code (default: {settings.BILLING_CURRENCY})",
        )
        parser.add_argument(
            "--product-name",
            type=str,
            default="Pro",
            help="Product name in Stripe (default: Pro)",
        )
        parser.add_argument(
            "--force",
            action="store_true",
            help="Create a new price even if a matching one exists",
        )

    def handle(self, *args, **options):
        if not settings.STRIPE_SECRET_KEY:
            raise CommandError("STRIPE_SECRET_KEY not set. Add it to your .env file first.")

        stripe = get_stripe()
        amount = options["amount"]
        currency = options["currency"].lower()
        period_days = settings.BILLING_PERIOD_DAYS

        self.stdout.write(
            f"Setting up {options['product_name']}: "
            f"{amount} {currency.upper()} every {period_days} days"
        )

        product = None
        products = stripe.Product.search(query=PRODUCT_QUERY)
        if products.data:
            product = products.data[0]
            self.stdout.write(self.style.WARNING(f"Found existing product: {product.id}"))

        if product is not None and not options["force"]:
            prices = stripe.Price.list(product=product.id, active=True, type="recurring")
            matching = [
                price
                for price in prices.data
                if price.unit_amount == amount and price.currency == currency
            ]
            if matching:
                self.stdout.write(
                    self.style.SUCCESS(
                        f"\nStripe already configured.\nAdd this to your .env:\n\n"
                        f"STRIPE_PRO_PRICE_ID={matching[0].id}\n"
                    )
                )
                return

        if product is None:
            product = stripe.Product.create(
                name=options["product_name"],
                description="Pro entitlement",
                metadata={"plan": "pro"},
            )
            self.stdout.write(f"Created product: {product.id}")

        price = stripe.Price.create(
            product=product.id,
            unit_amount=amount,
            currency=currency,
            recurring={"interval": "day", "interval_count": period_days},
            metadata={"plan": "pro", "period_days": str(period_days)},
        )
        self.stdout.write(f"Created price: {price.id}")

        self.stdout.write(
            self.style.SUCCESS(
                f"\nStripe setup complete.\nAdd this to your .env:\n\n"
                f"STRIPE_PRO_PRICE_ID={price.id}\n"
            )
        )
        self.stdout.write(
            self.style.NOTICE(
                "\nWebhook endpoint: https://your-domain.com/webhooks/stripe/\n"
                "Events: charge.*, invoice.paid, invoice.payment_failed, customer.subscription.*\n"
            )
        )
