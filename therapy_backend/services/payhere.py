"""PayHere hosted checkout: request signing and notification verification.

PayHere signs with upper-cased MD5 digests. The merchant secret itself is
never sent. Its digest is appended to the signed fields instead.
"""

import hashlib
import hmac
import time

from therapy_backend.core import config
from therapy_backend.models.payment import (
    PAYMENT_CANCELLED,
    PAYMENT_CHARGEDBACK,
    PAYMENT_COMPLETE,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
)
from therapy_backend.services.scheduling import random_base36

STATUS_CODES = {
    '2': PAYMENT_COMPLETE,
    '0': PAYMENT_PENDING,
    '-1': PAYMENT_CANCELLED,
    '-2': PAYMENT_FAILED,
    '-3': PAYMENT_CHARGEDBACK,
}

STATUS_MESSAGES = {
    '2': 'Success',
    '0': 'Pending',
    '-1': 'Cancelled',
    '-2': 'Failed',
    '-3': 'Chargedback',
}

REQUIRED_NOTIFICATION_FIELDS = ('merchant_id', 'order_id', 'payhere_amount', 'status_code', 'md5sig')


class PayHereConfigError(RuntimeError):
    pass


def md5_upper(value: str) -> str:
    return hashlib.md5(value.encode('utf-8')).hexdigest().upper()


def format_amount(amount: float) -> str:
    return f'{float(amount):.2f}'


def checkout_hash(merchant_id: str, order_id: str, amount: float, currency: str, merchant_secret: str) -> str:
    return md5_upper(merchant_id + order_id + format_amount(amount) + currency + md5_upper(merchant_secret))


def notification_signature(
    merchant_id: str,
    order_id: str,
    payhere_amount: str,
    payhere_currency: str,
    status_code: str,
    merchant_secret: str,
) -> str:
    return md5_upper(
        merchant_id + order_id + payhere_amount + payhere_currency + status_code + md5_upper(merchant_secret)
    )


def verify_notification(fields: dict, merchant_secret: str) -> bool:
    expected = notification_signature(
        fields.get('merchant_id', ''),
        fields.get('order_id', ''),
        fields.get('payhere_amount', ''),
        fields.get('payhere_currency', ''),
        fields.get('status_code', ''),
        merchant_secret,
    )
    return hmac.compare_digest(expected, fields.get('md5sig', '').upper())


def status_from_code(status_code: str) -> str:
    return STATUS_CODES.get(status_code, PAYMENT_FAILED)


def status_message(status_code: str) -> str:
    return STATUS_MESSAGES.get(status_code, 'Unknown')


def generate_order_id(now_ms: int | None = None) -> str:
    millis = now_ms if now_ms is not None else int(time.time() * 1000)
    return f'ORDER-{millis}-{random_base36(7)}'


def require_credentials() -> tuple[str, str]:
    if not config.PAYHERE_MERCHANT_ID or not config.PAYHERE_MERCHANT_SECRET:
        raise PayHereConfigError('PayHere credentials not configured')
    return config.PAYHERE_MERCHANT_ID, config.PAYHERE_MERCHANT_SECRET


def build_checkout_payload(
    *,
    order_id: str,
    amount: float,
    items: str,
    first_name: str,
    last_name: str,
    email: str,
    return_path: str,
    cancel_path: str,
    phone: str = '',
    address: str = '',
) -> dict:
    merchant_id, merchant_secret = require_credentials()
    currency = config.PAYHERE_CURRENCY

    return {
        'merchant_id': merchant_id,
        'return_url': f'{config.APP_URL}{return_path}',
        'cancel_url': f'{config.APP_URL}{cancel_path}',
        'notify_url': f'{config.APP_URL}/api/payment/notify',
        'order_id': order_id,
        'items': items,
        'currency': currency,
        'amount': format_amount(amount),
        'first_name': first_name,
        'last_name': last_name,
        'email': email,
        'phone': phone,
        'address': address,
        'city': config.PAYHERE_DEFAULT_CITY,
        'country': config.PAYHERE_DEFAULT_COUNTRY,
        'hash': checkout_hash(merchant_id, order_id, amount, currency, merchant_secret),
    }
