"""Shared pytest fixtures for the sales and shipments core."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterator, List, Optional

import pytest

from app import create_app
from app.extensions import db
from app.core.models import Customer, PaymentMethod, Product, Sale, User
from app.core.services import LineaVentaDTO, crear_venta, transaction
from config import Config


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SEED_DEFAULT_OPERATOR = False
    LOG_LEVEL = "WARNING"


@dataclass
class Seed:
    """Collaborator rows every scenario starts from."""

    operador: User
    cliente: Customer
    cliente_sin_direccion: Customer
    efectivo: PaymentMethod
    transferencia: PaymentMethod
    producto: Product
    producto_b: Product
    inactivo: Product


def seed_collaborators() -> Seed:
    """Insert an operator, customers, payment methods and products."""

    operador = User(nombre="Ana", email="ana@perfumeria.test", activo=True)
    cliente = Customer(
        nombre="Lucía", apellido="Gómez", telefono="11-5555-0000",
        calle="Av. Corrientes", altura="1234", piso="3", dpto="B",
        codigo_postal="1043", localidad="CABA", provincia="Buenos Aires",
    )
    sin_direccion = Customer(nombre="Pedro", apellido="Sosa", calle="Mitre", localidad="Quilmes")
    efectivo = PaymentMethod(nombre="Efectivo")
    transferencia = PaymentMethod(nombre="Transferencia", requiere_referencia=True)
    producto = Product(fragancia="Aqua Marina", stock=10, precio_venta=Decimal("1000.00"))
    producto_b = Product(fragancia="Rosa Nocturna", stock=5, precio_venta=Decimal("2500.00"))
    inactivo = Product(fragancia="Descontinuado", stock=50, precio_venta=Decimal("900.00"), activo=False)
    db.session.add_all([operador, cliente, sin_direccion, efectivo, transferencia, producto, producto_b, inactivo])
    db.session.commit()
    return Seed(operador, cliente, sin_direccion, efectivo, transferencia, producto, producto_b, inactivo)


@pytest.fixture
def app():
    """Application bound to a fresh in-memory database, context pushed."""

    application = create_app(TestingConfig)
    ctx = application.app_context()
    ctx.push()
    try:
        yield application
    finally:
        db.session.remove()
        db.drop_all()
        ctx.pop()


@pytest.fixture
def seed(app) -> Seed:
    return seed_collaborators()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def headers(seed) -> dict:
    """Request headers identifying the seeded operator."""

    return {"X-Operator-Id": str(seed.operador.id)}


@pytest.fixture
def make_sale(seed) -> Callable[..., Sale]:
    """Factory creating a committed sale; defaults to 1 unit of ``producto``."""

    def _make(
        lineas: Optional[List[LineaVentaDTO]] = None,
        cliente: Optional[Customer] = None,
        costo_envio: Decimal = Decimal("0"),
    ) -> Sale:
        with transaction():
            sale = crear_venta(
                cliente_id=(cliente or seed.cliente).id,
                metodo_pago_id=seed.efectivo.id,
                lineas=lineas or [LineaVentaDTO(seed.producto.id, 1)],
                operador=seed.operador,
                costo_envio=costo_envio,
            )
        return sale

    return _make


@pytest.fixture
def file_app(tmp_path) -> Iterator:
    """Application on a file database so several connections can race."""

    class FileConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'concurrency.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 15, "check_same_thread": False}}

    application = create_app(FileConfig)
    try:
        yield application
    finally:
        with application.app_context():
            db.session.remove()
            db.engine.dispose()
