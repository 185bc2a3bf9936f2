from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldsync.db import Base, make_engine
from fieldsync.main import app, get_db
from fieldsync.models import Product


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield TestingSessionLocal
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def add_product(session_factory):
    def _add(name: str, qty, price="10.00", updated_at: datetime | None = None) -> int:
        with session_factory() as session:
            product = Product(product_name=name, qty=Decimal(str(qty)), s_price=Decimal(price))
            if updated_at is not None:
                product.updated_at = updated_at
            session.add(product)
            session.commit()
            return product.id

    return _add


@pytest.fixture
def stock_of(session_factory):
    def _stock(product_id: int) -> Decimal:
        with session_factory() as session:
            return session.get(Product, product_id).qty

    return _stock


@pytest.fixture
def count_rows(session_factory):
    def _count(model) -> int:
        with session_factory() as session:
            return session.scalar(select(func.count()).select_from(model))

    return _count
