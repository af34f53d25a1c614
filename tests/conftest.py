import pytest
import sys
import os
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import create_async_engine

# Add parent directory to path to allow importing models and main
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import get_session, init_db
from dependencies import get_notifier
from main import app
from services.notify import OrderNotifier


@pytest_asyncio.fixture(name="engine", scope="function")
async def engine_fixture(tmp_path):
    # Throwaway SQLite file per test; the schema is created from the models
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'storefront_test.db'}",
        echo=False,
        future=True,
        poolclass=NullPool,
    )
    await init_db(bind=test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(name="session")
async def session_fixture(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(name="notifier")
def notifier_fixture(session_factory):
    return OrderNotifier(session_factory)


async def _make_user(session: AsyncSession, email: str, is_admin: bool = False, **fields):
    from models import User, AuthSession, hash_token, generate_session_token

    user = User(email=email, name=email.split("@")[0].title(), is_admin=is_admin, **fields)
    session.add(user)
    await session.commit()
    await session.refresh(user)

    token = generate_session_token()
    session.add(AuthSession(user_id=user.id, session_token_hash=hash_token(token)))
    await session.commit()
    return user, token


@pytest_asyncio.fixture(name="customer_and_token")
async def customer_and_token_fixture(session: AsyncSession):
    """Authenticated customer, returned as (user, token)."""
    return await _make_user(session, "asha@example.com")


@pytest.fixture(name="customer")
def customer_fixture(customer_and_token):
    return customer_and_token[0]


@pytest_asyncio.fixture(name="admin_and_token")
async def admin_and_token_fixture(session: AsyncSession):
    return await _make_user(session, "admin@example.com", is_admin=True)


@pytest_asyncio.fixture(name="friend_and_token")
async def friend_and_token_fixture(session: AsyncSession):
    """A second customer, e.g. someone joining through a referral link."""
    return await _make_user(session, "ravi@example.com")


@pytest_asyncio.fixture(name="rice")
async def rice_fixture(session: AsyncSession):
    """Variant-less product: ₹250, 10 in stock."""
    from models import Product

    product = Product(name="Basmati Rice 1kg", category="grocery", price=250, stock=10)
    session.add(product)
    await session.commit()
    await session.refresh(product)
    return product


@pytest_asyncio.fixture(name="saree")
async def saree_fixture(session: AsyncSession):
    """Product with two variants; returns (product, red, blue). Red: ₹300 x5, blue: ₹350 x2."""
    from models import Product, ProductVariant

    product = Product(name="Cotton Saree", category="apparel", price=300, stock=0, has_variants=True)
    session.add(product)
    await session.commit()
    await session.refresh(product)

    red = ProductVariant(product_id=product.id, name="Red", price=300, stock=5, is_default=True)
    blue = ProductVariant(product_id=product.id, name="Blue", price=350, stock=2)
    session.add(red)
    session.add(blue)
    await session.commit()
    await session.refresh(red)
    await session.refresh(blue)
    return product, red, blue


@pytest_asyncio.fixture(name="client")
async def client_fixture(session: AsyncSession, notifier: OrderNotifier):
    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
