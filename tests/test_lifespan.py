import asyncio
import logging
import time

import pytest
from fastapi.testclient import TestClient

import main
from otp import OtpStore


class FlakyStore:
    def __init__(self):
        self.calls = 0

    def sweep(self):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("backend unavailable")
        return 0


def test_sweeper_logs_failures_and_keeps_running(caplog):
    store = FlakyStore()

    async def run():
        task = asyncio.create_task(main.sweep_expired_otps(store, interval=0))
        while store.calls < 3:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    with caplog.at_level(logging.ERROR, logger="main"):
        asyncio.run(run())

    assert store.calls >= 3
    assert "OTP sweep failed" in caplog.text
    assert "backend unavailable" in caplog.text


def test_lifespan_sweeps_expired_codes(db, monkeypatch):
    now = [1000.0]
    store = OtpStore(clock=lambda: now[0])
    store.issue("stale@example.com")
    now[0] += store.ttl + 1

    monkeypatch.setattr(main, "SWEEP_INTERVAL_SECONDS", 0.01)
    monkeypatch.setattr(main, "ensure_indexes", lambda: None)
    monkeypatch.setattr(main.app.state, "otp_store", store)

    with TestClient(main.app) as client:
        assert client.get("/api/health").status_code == 200
        deadline = time.monotonic() + 2
        while store.backend.get("stale@example.com") is not None and time.monotonic() < deadline:
            time.sleep(0.01)

    assert store.backend.get("stale@example.com") is None
