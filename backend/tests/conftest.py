import os
import tempfile

# Stores are module-level singletons bound at import time; point them at a scratch database first.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="marketplace-tests-")
os.environ["MARKETPLACE_DB_PATH"] = os.path.join(_TEST_DB_DIR, "marketplace.sqlite3")
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)
