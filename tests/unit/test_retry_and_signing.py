from datetime import datetime, timedelta, timezone

from salesflow.utils.retry import compute_backoff, next_retry_at
from salesflow.webhooks import generate_secret, sign_payload, verify_signature


def test_backoff_doubles_and_caps():
    delays = [compute_backoff(n, base=1.0, multiplier=2.0, max_delay=10) for n in range(1, 7)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 10, 10]


def test_backoff_jitter_is_bounded():
    for _ in range(20):
        delay = compute_backoff(3, base=1.0, jitter=0.5)
        assert 4.0 <= delay <= 4.5


def test_next_retry_at_is_monotonic():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    due = [next_retry_at(now, n, base=30, max_delay=3600) for n in range(1, 5)]
    assert due[0] == now + timedelta(seconds=30)
    assert due == sorted(due)


def test_signature_round_trip():
    secret = generate_secret()
    body = '{"id":"e-1","event":"order.created"}'
    signature = sign_payload(body, secret)

    assert len(signature) == 64
    assert sign_payload(body.encode(), secret) == signature
    assert verify_signature(body, secret, signature.upper())
    assert not verify_signature(body + " ", secret, signature)
    assert not verify_signature(body, generate_secret(), signature)
