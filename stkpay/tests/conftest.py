from decimal import Decimal

import pytest

from stkpay.service import PaymentService
from stkpay.settings import Settings
from stkpay.storage import InMemoryReferralLedger, InMemoryTransactionStore
from stkpay.tests.fakes import FakeGateway, SleepRecorder


@pytest.fixture
def config() -> Settings:
    return Settings(
        minimum_amount=Decimal("100"),
        referral_reward=Decimal("10"),
        storage_retry_attempts=3,
        storage_retry_base_delay=0.0,
        unresolved_callback_attempts=3,
        unresolved_callback_delay=0.0,
        stale_after_seconds=60,
        storage_backend="memory",
        callback_url="https://example.test/callback",
        public_base_url="https://example.test",
        payout_whatsapp_number="254700000000",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def service(config, gateway, sleeper) -> PaymentService:
    return PaymentService(
        InMemoryTransactionStore(),
        InMemoryReferralLedger(),
        gateway,
        config,
        sleep=sleeper,
    )
