import os

# settings are read at import time
os.environ.setdefault("secret_key", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("FRONTEND_URL", "https://shop.test")
os.environ.setdefault("ENV", "test")
