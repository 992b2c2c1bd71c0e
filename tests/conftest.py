"""
Shared fixtures for the off-ramp test suite

1. In-memory aiosqlite engine with the full schema, fresh per test
2. In-memory fakes for every external collaborator (pricing, rate, bank, wallet, settlement)
3. A recording webhook dispatcher (no network)
4. An order factory for seeding orders in any lifecycle state
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from config import Config
from database import build_session_factory
from models import Base, BusinessTokenFee, OfframpOrder, OfframpOrderStatus
from services.bank_verification_service import BankVerifier, VerifiedAccount
from services.dex_price_service import PriceOracle, ReferencePrice
from services.offramp_order_service import OfframpOrderService
from services.offramp_rate_service import SOURCE_INTERNAL_API, RateQuote, RateSource
from services.order_lifecycle import OrderLifecycleManager
from services.quote_resolver import QuoteResolver
from services.settlement_service import PayoutExecutor, PayoutResult, SwapExecutor, SwapResult
from services.wallet_provisioning_service import ProvisionedWallet, WalletProvisioner
from services.webhook_dispatcher import BusinessWebhookDispatcher
from utils.exception_handler import UpstreamUnavailable

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BUSINESS_ID = "biz_test_001"
OTHER_BUSINESS_ID = "biz_test_002"
BASE_USDC = Config.USDC_CONTRACTS["base"]
BASE_TOKEN_CONTRACT = "0x4200000000000000000000000000000000000042"
TEST_RATE = Decimal("1500")
ACCOUNT_NUMBER = "0123456789"
BANK_CODE = "000013"


class TestConfig(Config):
    """Deterministic configuration for tests"""
    __test__ = False

    ENVIRONMENT = "test"
    IS_PRODUCTION = False
    WEBHOOK_SECRET = "test-webhook-secret"
    DEPOSIT_WEBHOOK_SECRET = None
    PAYOUT_WEBHOOK_SECRET = None
    INTERNAL_NOTIFICATION_WEBHOOK_URL = None
    RECONCILIATION_ENABLED = False
    CURRENT_USDC_NGN_OFFRAMP_RATE = Decimal("1550")
    EMERGENCY_USDC_NGN_RATE = Decimal("1650")
    MAX_RETRY_COUNT = 3
    ORDER_EXPIRY_HOURS = 24
    STUCK_ORDER_THRESHOLD_MINUTES = 60


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FakePriceOracle(PriceOracle):
    """USDC per token from a fixed table; the reference asset is always 1:1"""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices = prices or {}
        self.calls: List[tuple] = []
        self.fail = False

    async def get_reference_value(self, token, network, contract_address, amount, decimals=18):
        self.calls.append((token, network, contract_address, amount))
        if self.fail:
            raise UpstreamUnavailable("DEX price unavailable")
        price = self.prices.get(token.upper(), Decimal("1"))
        return ReferencePrice(
            usdc_value=amount * price,
            price_per_token=price,
            source="direct" if price == 1 else "fake_dex",
            route={"test": True},
        )


class FakeRateSource(RateSource):
    def __init__(self, rate: Decimal = TEST_RATE):
        self.rate = rate
        self.calls: List[Decimal] = []

    async def get_rate(self, amount: Decimal) -> RateQuote:
        self.calls.append(amount)
        return RateQuote(
            rate=self.rate,
            total=amount * self.rate,
            amount=amount,
            source=SOURCE_INTERNAL_API,
            fetched_at=datetime.now(timezone.utc),
            provider_id="test-provider",
            upstream_source="test",
        )


class FakeBankVerifier(BankVerifier):
    provider_name = "fake_bank"

    def __init__(self):
        self.accounts = {(ACCOUNT_NUMBER, BANK_CODE): "ADA OKAFOR"}
        self.banks = [
            {"code": "000013", "name": "GTBank"},
            {"code": "000014", "name": "Access Bank"},
            {"code": "000016", "name": "First Bank"},
        ]
        self.fail = False
        self.calls: List[tuple] = []

    async def verify_account(self, account_number, bank_code):
        self.calls.append((account_number, bank_code))
        if self.fail:
            raise UpstreamUnavailable("Bank verification provider timed out")
        name = self.accounts.get((account_number, bank_code))
        if name is None:
            return None
        bank = next((b for b in self.banks if b["code"] == bank_code), {})
        return VerifiedAccount(
            account_number=account_number,
            account_name=name,
            bank_code=bank_code,
            bank_name=bank.get("name"),
            provider=self.provider_name,
            verified_at=datetime.now(timezone.utc),
        )

    async def list_banks(self):
        return sorted(self.banks, key=lambda bank: bank["name"].lower())


class FakeWalletProvisioner(WalletProvisioner):
    def __init__(self):
        self.fail = False
        self.issued: List[ProvisionedWallet] = []

    async def provision(self, network, order_reference):
        if self.fail:
            raise UpstreamUnavailable(f"Deposit wallet generation timed out for {network}")
        if network == "solana":
            address = uuid.uuid4().hex + uuid.uuid4().hex[:12]
        else:
            address = "0x" + uuid.uuid4().hex + uuid.uuid4().hex[:8]
        wallet = ProvisionedWallet(
            address=address,
            network=network,
            key_reference=f"kms://test/{order_reference}",
            generated_at=datetime.now(timezone.utc),
        )
        self.issued.append(wallet)
        return wallet


class FakeSwapExecutor(SwapExecutor):
    def __init__(self):
        self.output_amount: Optional[Decimal] = None
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    async def execute_swap(self, order):
        self.calls.append(order.order_id)
        if self.error is not None:
            raise self.error
        output = self.output_amount
        if output is None:
            output = order.received_amount or order.token_amount
        return SwapResult(
            transaction_hash=f"0xswap{len(self.calls):04d}",
            output_amount=Decimal(str(output)),
            route={"dex": "fake"},
        )


class FakePayoutExecutor(PayoutExecutor):
    def __init__(self):
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    async def initiate_payout(self, order, amount, reference):
        self.calls.append({"order_id": order.order_id, "amount": amount, "reference": reference})
        if self.error is not None:
            raise self.error
        return PayoutResult(reference=reference, provider_reference=f"TRF-{len(self.calls)}", status="pending",
                            amount=amount)


class RecordingDispatcher(BusinessWebhookDispatcher):
    """Captures dispatched events instead of posting them"""

    def __init__(self, config=None):
        super().__init__(config=config or TestConfig)
        self.events: List[Dict[str, Any]] = []
        self.alerts: List[Dict[str, Any]] = []

    def dispatch(self, order_id, url, event_type, data):
        self.events.append({"order_id": order_id, "url": url, "event": event_type, "data": data})
        return None

    def alert(self, alert_type, data):
        self.alerts.append({"type": alert_type, "data": data})
        return None

    def event_names(self, order_id: Optional[str] = None) -> List[str]:
        return [e["event"] for e in self.events if order_id is None or e["order_id"] == order_id]


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,  # One shared connection keeps the in-memory schema alive
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


# ============================================================================
# COMPONENTS
# ============================================================================

@pytest.fixture
def test_config():
    return TestConfig


@pytest.fixture
def price_oracle():
    return FakePriceOracle()


@pytest.fixture
def rate_source():
    return FakeRateSource()


@pytest.fixture
def bank_verifier():
    return FakeBankVerifier()


@pytest.fixture
def wallet_provisioner():
    return FakeWalletProvisioner()


@pytest.fixture
def swap_executor():
    return FakeSwapExecutor()


@pytest.fixture
def payout_executor():
    return FakePayoutExecutor()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def lifecycle(session_factory, dispatcher, swap_executor, payout_executor, rate_source, test_config):
    return OrderLifecycleManager(
        dispatcher=dispatcher,
        swap_executor=swap_executor,
        payout_executor=payout_executor,
        rate_source=rate_source,
        session_factory=session_factory,
        config=test_config,
    )


@pytest.fixture
def order_service(session_factory, dispatcher, lifecycle, price_oracle, rate_source, bank_verifier,
                  wallet_provisioner, test_config):
    return OfframpOrderService(
        quote_resolver=QuoteResolver(price_oracle, rate_source, config=test_config),
        bank_verifier=bank_verifier,
        wallet_provisioner=wallet_provisioner,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        session_factory=session_factory,
        config=test_config,
    )


@pytest_asyncio.fixture
async def fee_table(session_factory):
    """1% on base USDC, 2.5% on a second base token, an inactive row that must be ignored"""
    async with session_factory() as session:
        session.add_all([
            BusinessTokenFee(business_id=BUSINESS_ID, network="base", token_symbol="USDC",
                             contract_address=BASE_USDC, decimals=6, fee_percentage=Decimal("1")),
            BusinessTokenFee(business_id=BUSINESS_ID, network="base", token_symbol="ZORA",
                             contract_address=BASE_TOKEN_CONTRACT, decimals=18, fee_percentage=Decimal("2.5")),
            BusinessTokenFee(business_id=BUSINESS_ID, network="base", token_symbol="OLD",
                             contract_address="0x000000000000000000000000000000000000dead", decimals=18,
                             fee_percentage=Decimal("5"), is_active=False),
        ])
        await session.commit()


@pytest.fixture
def order_factory(session_factory):
    """Insert an order directly; defaults describe 100 USDC on base at ₦1500 with a 1% fee"""

    async def _create(**overrides) -> OfframpOrder:
        now = datetime.now(timezone.utc)
        suffix = uuid.uuid4().hex[:8].upper()
        values = dict(
            order_id=f"OFF_{int(now.timestamp() * 1000)}_{suffix}X",
            business_order_reference=f"OFFRAMP-USDC-{suffix}",
            business_id=BUSINESS_ID,
            customer_email="ada@example.com",
            customer_name="Ada Okafor",
            token_amount=Decimal("100"),
            target_token="USDC",
            target_network="base",
            token_contract_address=BASE_USDC,
            exchange_rate=TEST_RATE,
            gross_fiat_amount=Decimal("150000"),
            fee_percentage=Decimal("1"),
            fee_amount=Decimal("1500"),
            net_fiat_amount=Decimal("148500"),
            fiat_currency="NGN",
            recipient_account_number=ACCOUNT_NUMBER,
            recipient_account_name="ADA OKAFOR",
            recipient_bank_code=BANK_CODE,
            recipient_bank_name="GTBank",
            bank_verification_provider="fake_bank",
            bank_verified_at=now,
            deposit_wallet_address="0x" + uuid.uuid4().hex + uuid.uuid4().hex[:8],
            deposit_wallet_network="base",
            deposit_key_reference="kms://test/key",
            deposit_wallet_generated_at=now,
            deposit_wallet_expires_at=now + timedelta(hours=24),
            tokens_received=False,
            status=OfframpOrderStatus.PENDING_DEPOSIT.value,
            webhook_url="https://merchant.example.com/hooks/offramp",
            retry_count=0,
            order_metadata={},
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=24),
        )
        values.update(overrides)
        order = OfframpOrder(**values)
        async with session_factory() as session:
            session.add(order)
            await session.commit()
        return order

    return _create


@pytest.fixture
def create_order_request():
    return {
        "customer_email": "ada@example.com",
        "customer_name": "Ada Okafor",
        "token_amount": "100",
        "target_token": "USDC",
        "target_network": "base",
        "recipient_account_number": ACCOUNT_NUMBER,
        "recipient_bank_code": BANK_CODE,
        "webhook_url": "https://merchant.example.com/hooks/offramp",
    }
