import pytest

from otp import OtpError, OtpStore


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return OtpStore(clock=clock)


def test_issue_generates_six_digits(store):
    code = store.issue("a@example.com")
    assert len(code) == 6 and code.isdigit()
    record = store.backend.get("a@example.com")
    assert record["attempts"] == 0
    assert record["expires"] == store.clock() + 600


def test_verify_succeeds_once(store):
    code = store.issue("a@example.com")
    store.verify("a@example.com", code)
    assert store.backend.get("a@example.com") is None

    with pytest.raises(OtpError, match="OTP not found or expired"):
        store.verify("a@example.com", code)


def test_verified_email_consumed_once(store):
    store.verify("a@example.com", store.issue("a@example.com"))
    assert store.consume_verified("a@example.com") is True
    assert store.consume_verified("a@example.com") is False
    assert store.consume_verified("never@example.com") is False


def test_expired_code_is_removed(store, clock):
    code = store.issue("a@example.com")
    clock.now += 601
    with pytest.raises(OtpError, match="OTP has expired"):
        store.verify("a@example.com", code)
    assert store.backend.get("a@example.com") is None


def test_wrong_code_keeps_record(store):
    code = store.issue("a@example.com")
    wrong = "000000" if code != "000000" else "111111"
    with pytest.raises(OtpError, match="Invalid OTP"):
        store.verify("a@example.com", wrong)
    assert store.backend.get("a@example.com")["attempts"] == 1
    store.verify("a@example.com", code)


def test_sixth_attempt_invalidates_code(store):
    code = store.issue("a@example.com")
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(5):
        with pytest.raises(OtpError, match="Invalid OTP"):
            store.verify("a@example.com", wrong)
    with pytest.raises(OtpError, match="Too many OTP verification attempts"):
        store.verify("a@example.com", wrong)
    with pytest.raises(OtpError, match="not found"):
        store.verify("a@example.com", code)


def test_reissue_resets_attempts(store):
    store.issue("a@example.com")
    with pytest.raises(OtpError):
        store.verify("a@example.com", "abcdef")
    store.issue("a@example.com")
    assert store.backend.get("a@example.com")["attempts"] == 0


def test_sweep_removes_only_expired(store, clock):
    store.issue("old@example.com")
    clock.now += 300
    store.issue("new@example.com")
    clock.now += 301

    assert store.sweep() == 1
    assert store.backend.get("old@example.com") is None
    assert store.backend.get("new@example.com") is not None
