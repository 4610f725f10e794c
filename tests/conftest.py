"""
GST Invoice Admin - Test Configuration

Pytest fixtures and configuration.

Every test gets its own SQLite database file and a mock IRP (respx), so the
whole e-invoice lifecycle runs without Postgres or the NIC sandbox.
"""

import itertools
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

import app.models  # noqa: F401  (registers mappers)
from app.database import Base
from app.models.customer import Customer
from app.models.invoice import InvoiceItem, InvoiceStatus, TaxInvoice
from app.schemas.einvoice import GSTSettings
from app.services.einvoice_service import EInvoiceService, build_einvoice_service
from app.services.gst_settings_service import GSTSettingsService
from app.services.gst_token_manager import GSTTokenManager
from app.services.rate_limiter import SlidingWindowRateLimiter
from fixtures.irp_mock import MockIRPServer
from main import app


SELLER_GSTIN = "27AABCU9603R1ZX"           # Maharashtra
BUYER_GSTIN = "29AAGCB7383J1Z4"            # Karnataka (inter-state)
LOCAL_BUYER_GSTIN = "27AAACR5055K1Z7"      # Maharashtra (intra-state)

TEST_GST_SETTINGS = {
    "api_base_url": MockIRPServer.BASE_URL,
    "client_id": "AAACU09TXPLRXXX",
    "client_secret": "client-secret",
    "api_username": "api_user",
    "api_password": "api-password",
    "environment": "sandbox",
    "retry_attempts": 3,
    "request_timeout": 5,
    "rate_limit_requests": 50,
    "company_gstin": SELLER_GSTIN,
    "company_legal_name": "Acme Industries Pvt Ltd",
    "company_trade_name": "Acme",
    "company_address1": "12 MG Road",
    "company_city": "Pune",
    "company_state": "Maharashtra",
    "company_state_code": "27",
    "company_pincode": "411001",
}


# ===========================================
# DATABASE
# ===========================================

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'einvoice_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ===========================================
# MOCK IRP
# ===========================================

@pytest.fixture
def irp() -> MockIRPServer:
    """Mock IRP, active for the whole test."""
    server = MockIRPServer()
    with server.activate():
        yield server


# ===========================================
# SERVICES
# ===========================================

@pytest_asyncio.fixture
async def gst_configured(session_factory) -> GSTSettings:
    """Store a complete GST configuration pointing at the mock IRP."""
    return await GSTSettingsService(session_factory).update(TEST_GST_SETTINGS)


@pytest_asyncio.fixture
async def einvoice_service(session_factory) -> AsyncGenerator[EInvoiceService, None]:
    service = build_einvoice_service(
        session_factory=session_factory,
        rate_limiter=SlidingWindowRateLimiter(window_seconds=60),
        token_manager=GSTTokenManager(),
    )
    yield service
    await service.aclose()


@pytest_asyncio.fixture
async def client(einvoice_service: EInvoiceService) -> AsyncGenerator[AsyncClient, None]:
    """API client wired to the test service (ASGITransport skips the lifespan)."""
    app.state.einvoice_service = einvoice_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest.fixture
def make_invoice(session_factory) -> Callable[..., Awaitable[int]]:
    """
    Factory creating a persisted invoice with one buyer and `items` lines.
    Returns the invoice id.
    """
    counter = itertools.count(1)

    async def _make(
        status: InvoiceStatus = InvoiceStatus.VALIDATED,
        buyer_gstin: str = BUYER_GSTIN,
        buyer_state_code: str = "29",
        items: int = 1,
        hsn_sac_code: str = "84713010",
        **fields,
    ) -> int:
        n = next(counter)
        async with session_factory() as db:
            customer = Customer(
                company_name=f"Buyer {n} Pvt Ltd",
                gstin=buyer_gstin,
                state_code=buyer_state_code,
                state_name="Karnataka" if buyer_state_code == "29" else "Maharashtra",
                address="5 Residency Road",
                pin_code="560025",
                email="accounts@buyer.test",
            )
            invoice = TaxInvoice(
                invoice_no=fields.pop("invoice_no", f"INV-2026-{n:04d}"),
                invoice_date=fields.pop("invoice_date", date(2026, 10, 19)),
                customer=customer,
                supply_type="B2B",
                status=status,
                grand_total_qty=Decimal("10") * items,
                grand_total_taxable_amt=Decimal("1000.00") * items,
                grand_total_cgst_amt=Decimal("90.00") * items,
                grand_total_sgst_amt=Decimal("90.00") * items,
                grand_total_igst_amt=Decimal("180.00") * items,
                grand_total_amt=Decimal("1180.00") * items,
                **fields,
            )
            for i in range(items):
                invoice.items.append(InvoiceItem(
                    product_name=f"Laptop model {i + 1}",
                    hsn_sac_code=hsn_sac_code,
                    unit="nos",
                    qty=Decimal("10"),
                    rate=Decimal("100.00"),
                    taxable_amt=Decimal("1000.00"),
                    cgst_rate=Decimal("9"),
                    cgst_amt=Decimal("90.00"),
                    sgst_rate=Decimal("9"),
                    sgst_amt=Decimal("90.00"),
                    igst_rate=Decimal("18"),
                    igst_amt=Decimal("180.00"),
                    total_amount=Decimal("1180.00"),
                ))
            db.add(invoice)
            await db.commit()
            return invoice.id

    return _make


@pytest.fixture
def fetch_invoice(session_factory) -> Callable[[int], Awaitable[TaxInvoice]]:
    """Read an invoice back in a fresh session."""
    async def _fetch(invoice_id: int) -> TaxInvoice:
        async with session_factory() as db:
            return await db.get(TaxInvoice, invoice_id)

    return _fetch
