"""
Test Fixtures Package
Webhook signing helpers and provider payload builders
"""

from .webhook_signing import (
    ADMIN_TEST_TOKEN,
    FLUTTERWAVE_TEST_SECRET,
    PAYSTACK_TEST_SECRET,
    encode_payload,
    flutterwave_payload,
    paystack_payload,
    sign_body,
)

__all__ = [
    'ADMIN_TEST_TOKEN',
    'FLUTTERWAVE_TEST_SECRET',
    'PAYSTACK_TEST_SECRET',
    'encode_payload',
    'flutterwave_payload',
    'paystack_payload',
    'sign_body',
]
