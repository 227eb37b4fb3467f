"""
Pytest configuration shared by every test module.
Settings are read once at import time, so the environment is set here,
before the application modules are imported by tests/conftest.py.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["JWT_SECRET"] = "test-secret"

os.environ["PAYMENT_PROVIDERS"] = "vnpay,momo"
os.environ["PAYMENT_EXPIRATION_MINUTES"] = "15"
os.environ["PAYMENT_SUCCESS_URL"] = "http://frontend.test/payment/success"
os.environ["PAYMENT_FAILURE_URL"] = "http://frontend.test/payment/failure"
os.environ["WEBHOOK_ALLOW_UNLISTED_SOURCES"] = "False"
os.environ["TRUST_PROXY_HEADERS"] = "True"

os.environ["VNPAY_TMN_CODE"] = "LMSTEST1"
os.environ["VNPAY_HASH_SECRET"] = "VNPAYSECRETKEY123"
os.environ["VNPAY_URL"] = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
os.environ["VNPAY_RETURN_URL"] = "http://testserver/payments/vnpay/return"
os.environ["VNPAY_IP_ALLOWLIST"] = "113.160.92.202,203.171.19.146"

os.environ["MOMO_PARTNER_CODE"] = "MOMOLMS01"
os.environ["MOMO_ACCESS_KEY"] = "momo-access-key"
os.environ["MOMO_SECRET_KEY"] = "momo-secret-key"
os.environ["MOMO_ENDPOINT"] = "https://test-payment.momo.vn/v2/gateway/api/create"
os.environ["MOMO_REFUND_ENDPOINT"] = "https://test-payment.momo.vn/v2/gateway/api/refund"
os.environ["MOMO_RETURN_URL"] = "http://testserver/payments/momo/return"
os.environ["MOMO_NOTIFY_URL"] = "http://testserver/payments/momo/ipn"
os.environ["MOMO_IP_WHITELIST"] = "203.0.113.5"
