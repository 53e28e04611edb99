"""
Test settings.

In-memory SQLite and fixed billing secrets so tests never need
external services.
"""

from .base import *  # noqa: F403
from .base import settings

DEBUG = False
ALLOWED_HOSTS = ["testserver"]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

settings.STRIPE_SECRET_KEY = "sk_test_dummy"
settings.STRIPE_WEBHOOK_SECRET = "whsec_test"
settings.STRIPE_PRO_PRICE_ID = "price_test_pro"
