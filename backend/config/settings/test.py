"""
Test settings.

In-memory SQLite and dummy Stripe credentials. Gateway calls are always mocked.
"""

from .base import *  # noqa: F403
from .base import settings

DEBUG = False
ALLOWED_HOSTS = ["testserver", "localhost"]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

settings.STRIPE_SECRET_KEY = "sk_test_dummy"
settings.STRIPE_PUBLISHABLE_KEY = "pk_test_dummy"
settings.STRIPE_WEBHOOK_SECRET = "whsec_test"
