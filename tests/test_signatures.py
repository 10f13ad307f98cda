import hashlib
import hmac

import pytest

from app.services.signatures import (
    CanonicalScheme,
    CanonicalizationError,
    canonicalize,
    secret_fingerprint,
    sign,
    sign_params,
    verify,
)
from app.services.psp_vnpay import VNPAY_SCHEME

SORTED_SCHEME = CanonicalScheme(
    digest="sha512",
    key_prefix="vnp_",
    exclude=frozenset({"vnp_SecureHash", "vnp_SecureHashType"}),
    encode_values=True,
)
ORDERED_SCHEME = CanonicalScheme(
    digest="sha256",
    field_order=("accessKey", "amount", "orderId", "partnerCode"),
    static_fields={"accessKey": "AK"},
)


def test_sorted_scheme_orders_keys_filters_prefix_and_encodes_values():
    params = {
        "vnp_TxnRef": "7-12",
        "vnp_Amount": "15000000",
        "vnp_OrderInfo": "Payment for order #7",
        "vnp_SecureHash": "ignored",
        "vnp_SecureHashType": "HmacSHA512",
        "utm_source": "mail",
    }

    assert canonicalize(params, SORTED_SCHEME) == (
        "vnp_Amount=15000000&vnp_OrderInfo=Payment+for+order+%237&vnp_TxnRef=7-12"
    )


def test_ordered_scheme_uses_declared_order_and_static_fields():
    params = {"partnerCode": "MOMO", "orderId": "7-12", "amount": 150000, "extra": "dropped"}

    assert canonicalize(params, ORDERED_SCHEME) == "accessKey=AK&amount=150000&orderId=7-12&partnerCode=MOMO"


def test_ordered_scheme_requires_every_field():
    with pytest.raises(CanonicalizationError):
        canonicalize({"amount": 1, "orderId": "7-12"}, ORDERED_SCHEME)


def test_sign_matches_plain_hmac():
    expected = hmac.new(b"secret", b"a=1&b=2", hashlib.sha512).hexdigest()
    assert sign("a=1&b=2", "secret", "sha512") == expected


def test_verify_accepts_valid_signature_and_ignores_case():
    params = {"vnp_Amount": "15000000", "vnp_TxnRef": "7-12"}
    signature = sign_params(params, "secret", SORTED_SCHEME)

    assert verify(params, "secret", signature, SORTED_SCHEME) is True
    assert verify(params, "secret", signature.upper(), SORTED_SCHEME) is True


def test_verify_rejects_tampering_wrong_secret_and_malformed_input():
    params = {"vnp_Amount": "15000000", "vnp_TxnRef": "7-12"}
    signature = sign_params(params, "secret", SORTED_SCHEME)

    assert verify({**params, "vnp_Amount": "1500000"}, "secret", signature, SORTED_SCHEME) is False
    assert verify(params, "other", signature, SORTED_SCHEME) is False
    assert verify(params, None, signature, SORTED_SCHEME) is False
    assert verify(params, "secret", "", SORTED_SCHEME) is False
    assert verify(params, "secret", ["not", "a", "string"], SORTED_SCHEME) is False
    assert verify({"other": "x"}, "secret", signature, SORTED_SCHEME) is False
    assert verify({**params, "vnp_Bad": object()}, "secret", signature, SORTED_SCHEME) is False


def test_unsupported_digest_is_refused():
    with pytest.raises(ValueError):
        CanonicalScheme(digest="md5")


def test_secret_fingerprint_is_short_and_stable():
    assert secret_fingerprint(None) is None
    assert secret_fingerprint("secret") == secret_fingerprint("secret")
    assert secret_fingerprint("secret").startswith("sha256:")
    assert len(secret_fingerprint("secret")) == len("sha256:") + 8


VNPAY_RETURN = {
    "vnp_Amount": "15000000",
    "vnp_BankCode": "NCB",
    "vnp_BankTranNo": "VNP14160001",
    "vnp_CardType": "ATM",
    "vnp_OrderInfo": "Payment for order 7",
    "vnp_PayDate": "20261018153000",
    "vnp_ResponseCode": "00",
    "vnp_TmnCode": "TESTTMN1",
    "vnp_TransactionNo": "14160001",
    "vnp_TransactionStatus": "00",
    "vnp_TxnRef": "7-12",
}


def change_one_character(value) -> str:
    text = str(value)
    if not text:
        return "x"
    return text[:-1] + ("1" if text[-1] == "0" else "0")


@pytest.mark.parametrize("field", sorted(VNPAY_RETURN))
def test_vnpay_signature_breaks_on_any_single_character_change(field):
    signature = sign_params(VNPAY_RETURN, "secret", VNPAY_SCHEME)
    assert verify(VNPAY_RETURN, "secret", signature, VNPAY_SCHEME) is True

    altered = {**VNPAY_RETURN, field: change_one_character(VNPAY_RETURN[field])}

    assert verify(altered, "secret", signature, VNPAY_SCHEME) is False
