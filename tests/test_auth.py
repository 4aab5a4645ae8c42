import base64
import sys
sys.path.insert(0, '.')

import pytest
from cryptography.exceptions import InvalidSignature

from ingest.backpack_auth import (
    ConfigurationError,
    Credentials,
    RequestSigner,
    canonical_params,
)

SEED = bytes(range(32))
SECRET = base64.b64encode(SEED).decode()


def _signer(window_ms=5000):
    return RequestSigner(Credentials.from_base64('test-key', SECRET), window_ms=window_ms)


def _verify(signer, payload, signature_b64):
    public = signer._credentials.public_key()
    public.verify(base64.b64decode(signature_b64), payload.encode())


def test_canonical_params_sorted_and_rendered():
    params = {'symbol': 'APT_USDC_PERP', 'side': 'Ask', 'postOnly': True, 'reduceOnly': False, 'limit': 20}
    assert canonical_params(params) == (
        'limit=20&postOnly=true&reduceOnly=false&side=Ask&symbol=APT_USDC_PERP'
    )


def test_canonical_params_drops_null_and_nested_values():
    params = {'b': None, 'a': '1', 'c': [1, 2], 'd': {'x': 1}}
    assert canonical_params(params) == 'a=1'
    assert canonical_params({}) == ''
    assert canonical_params(None) == ''


def test_signing_payload_layout():
    payload = RequestSigner.signing_payload('orderCancel', {'symbol': 'SOL_USDC', 'orderId': '42'}, 1700000000000, 5000)
    assert payload == (
        'instruction=orderCancel&orderId=42&symbol=SOL_USDC&timestamp=1700000000000&window=5000'
    )


def test_signing_payload_without_params_omits_segment():
    payload = RequestSigner.signing_payload('positionQueryAll', None, 1700000000000, 5000)
    assert payload == 'instruction=positionQueryAll&timestamp=1700000000000&window=5000'


def test_signature_is_independent_of_param_order():
    signer = _signer()
    first = signer.sign('orderExecute', {'symbol': 'X', 'side': 'Ask', 'price': '1.5'}, timestamp=1000)
    second = signer.sign('orderExecute', {'price': '1.5', 'side': 'Ask', 'symbol': 'X'}, timestamp=1000)
    assert first['X-Signature'] == second['X-Signature']


def test_sign_headers_verify_against_public_key():
    signer = _signer(window_ms=6000)
    params = {'symbol': 'APT_USDC_PERP', 'quantity': '100.0'}
    headers = signer.sign('orderExecute', params, timestamp=1234)

    assert headers['X-API-Key'] == 'test-key'
    assert headers['X-Timestamp'] == '1234'
    assert headers['X-Window'] == '6000'
    assert headers['Content-Type'] == 'application/json; charset=utf-8'

    payload = RequestSigner.signing_payload('orderExecute', params, 1234, 6000)
    _verify(signer, payload, headers['X-Signature'])


def test_tampered_payload_fails_verification():
    signer = _signer()
    headers = signer.sign('orderExecute', {'price': '10'}, timestamp=1234)
    tampered = RequestSigner.signing_payload('orderExecute', {'price': '11'}, 1234, 5000)
    with pytest.raises(InvalidSignature):
        _verify(signer, tampered, headers['X-Signature'])


def test_timestamp_defaults_to_now():
    headers = _signer().sign('positionQueryAll')
    assert int(headers['X-Timestamp']) > 1_600_000_000_000


def test_ws_signature_signs_subscribe_instruction():
    signer = _signer()
    key, signature, ts, window = signer.ws_signature(timestamp=777)
    assert key == 'test-key'
    assert ts == '777'
    assert window == '5000'
    _verify(signer, 'instruction=subscribe&timestamp=777&window=5000', signature)


@pytest.mark.parametrize('api_key, secret', [
    (None, SECRET),
    ('key', None),
    ('key', 'not base64 at all!'),
    ('key', base64.b64encode(b'short').decode()),
])
def test_bad_credentials_raise_configuration_error(api_key, secret):
    with pytest.raises(ConfigurationError):
        Credentials.from_base64(api_key, secret)
