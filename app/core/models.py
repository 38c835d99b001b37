# app/core/models.py
from __future__ import annotations

import os
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import (
    CheckConstraint, Column, Integer, BigInteger, String, Text, DateTime,
    Boolean, ForeignKey, UniqueConstraint, Numeric, Enum, JSON, Index,
    func
)
from sqlalchemy.orm import relationship, validates

from app.extensions import db  # type: ignore


# =============================================================================
# Utilidades y Mixins
# =============================================================================

MONEY = Numeric(10, 2)   # 99.999.999,99 máx
PCT = Numeric(5, 2)      # 0,00 a 100,00

def _as_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if isinstance(value, Decimal):
        return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

class TimestampMixin:
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False, index=True)

class AuditMixin:
    created_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    updated_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)


# =============================================================================
# Enums
# =============================================================================

SaleStatusEnum = Enum("en_proceso", "enviado", "entregado", "reprogramado", "cancelado", name="sale_status_enum")
PaymentStatusEnum = Enum("pendiente", "pagado", name="payment_status_enum")
DeliveryStatusEnum = Enum("pendiente", "entregado", "no_encontrado", "reprogramado", "cancelado", name="delivery_status_enum")
RealPaymentEnum = Enum("pendiente", "pagado", "rechazado", name="real_payment_enum")
StockMoveEnum = Enum("reserva_venta", "liberacion_venta", name="stock_move_enum")


# =============================================================================
# Colaboradores (sólo lectura para el núcleo, salvo el stock)
# =============================================================================

class User(db.Model, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    nombre = Column(String(120), nullable=False)
    email = Column(String(180), nullable=False, unique=True, index=True)
    activo = Column(Boolean, default=True, nullable=False)

    @validates("email")
    def _val_email(self, key, value):
        if not value or "@" not in value:
            raise ValueError("Email inválido")
        return value.lower()

    def __repr__(self):
        return f"<User {self.id} {self.email}>"


class Customer(db.Model, TimestampMixin):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True)
    nombre = Column(String(100), nullable=False)
    apellido = Column(String(100), nullable=False, default="")
    telefono = Column(String(40), nullable=True)
    email = Column(String(180), nullable=True)
    calle = Column(String(150), nullable=True)
    altura = Column(String(20), nullable=True)
    piso = Column(String(10), nullable=True)
    dpto = Column(String(10), nullable=True)
    codigo_postal = Column(String(10), nullable=True)
    localidad = Column(String(100), nullable=True)
    provincia = Column(String(100), nullable=True)
    aclaracion = Column(String(255), nullable=True)
    activo = Column(Boolean, default=True, nullable=False)

    @property
    def nombre_completo(self) -> str:
        return f"{self.nombre or ''} {self.apellido or ''}".strip()

    def __repr__(self):
        return f"<Customer {self.id} {self.nombre_completo}>"


class PaymentMethod(db.Model, TimestampMixin):
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True)
    nombre = Column(String(50), nullable=False, unique=True)
    descripcion = Column(String(255), nullable=True)
    activo = Column(Boolean, default=True, nullable=False)
    requiere_referencia = Column(Boolean, default=False, nullable=False)


class Product(db.Model, TimestampMixin):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    fragancia = Column(String(100), nullable=False, index=True)
    stock = Column(Integer, default=0, nullable=False)
    stock_minimo = Column(Integer, default=5, nullable=False)
    precio_venta = Column(MONEY, default=Decimal("0.00"), nullable=False)
    activo = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_no_negativo"),
        CheckConstraint("stock_minimo >= 0", name="ck_products_stock_minimo"),
        CheckConstraint("precio_venta >= 0", name="ck_products_precio_venta"),
    )

    @validates("precio_venta")
    def _val_money(self, key, value):
        return _as_money(value)

    @property
    def stock_bajo(self) -> bool:
        return self.stock <= (self.stock_minimo or 0)

    def __repr__(self):
        return f"<Product {self.id} {self.fragancia} stock={self.stock}>"


# =============================================================================
# Núcleo: ventas, envíos, contadores
# =============================================================================

class SequenceCounter(db.Model):
    """Contador serializado por clave (``venta:YYYYMM``, ``lote:YYYYMMDD``)."""
    __tablename__ = "sequence_counters"

    clave = Column(String(40), primary_key=True)
    ultimo = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("ultimo >= 0", name="ck_sequence_counters_ultimo"),
    )


class Sale(db.Model, TimestampMixin, AuditMixin):
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True)
    numero_venta = Column(String(20), nullable=False)
    fecha = Column(DateTime, default=datetime.now, nullable=False, index=True)
    cliente_id = Column(Integer, ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    usuario_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    metodo_pago_id = Column(Integer, ForeignKey("payment_methods.id", ondelete="RESTRICT"), nullable=False, index=True)
    referencia_pago = Column(String(100), nullable=True)
    subtotal = Column(MONEY, default=Decimal("0.00"), nullable=False)
    descuento_total = Column(MONEY, default=Decimal("0.00"), nullable=False)
    costo_envio = Column(MONEY, default=Decimal("0.00"), nullable=False)
    total = Column(MONEY, default=Decimal("0.00"), nullable=False)
    estado_venta = Column(SaleStatusEnum, default="en_proceso", nullable=False, index=True)
    estado_pago = Column(PaymentStatusEnum, default="pendiente", nullable=False, index=True)
    observaciones = Column(Text, nullable=True)

    cliente = relationship("Customer")
    usuario = relationship("User", foreign_keys=[usuario_id])
    metodo_pago = relationship("PaymentMethod")
    items = relationship(
        "SaleItem", cascade="all, delete-orphan", backref="venta",
        order_by="SaleItem.id",
    )
    envios = relationship(
        "Shipment", cascade="all, delete-orphan", backref="venta",
        order_by="Shipment.id", passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("numero_venta", name="uq_sales_numero_venta"),
        CheckConstraint("subtotal >= 0", name="ck_sales_subtotal"),
        CheckConstraint("descuento_total >= 0", name="ck_sales_descuento_total"),
        CheckConstraint("costo_envio >= 0", name="ck_sales_costo_envio"),
        CheckConstraint("total >= 0", name="ck_sales_total"),
    )

    @validates("subtotal", "descuento_total", "costo_envio", "total")
    def _val_money(self, key, value):
        return _as_money(value)

    def __repr__(self):
        return f"<Sale {self.id} {self.numero_venta} {self.estado_venta}/{self.estado_pago}>"


class SaleItem(db.Model, TimestampMixin):
    __tablename__ = "sale_items"

    id = Column(Integer, primary_key=True)
    venta_id = Column(Integer, ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    producto_id = Column(Integer, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    cantidad = Column(Integer, nullable=False, default=1)
    precio_unitario = Column(MONEY, nullable=False)
    descuento_porcentaje = Column(PCT, default=Decimal("0.00"), nullable=False)
    descuento_monto = Column(MONEY, default=Decimal("0.00"), nullable=False)
    precio_con_descuento = Column(MONEY, nullable=False)
    subtotal = Column(MONEY, nullable=False)

    producto = relationship("Product")

    __table_args__ = (
        CheckConstraint("cantidad >= 1", name="ck_sale_items_cantidad"),
        CheckConstraint("precio_unitario >= 0", name="ck_sale_items_precio"),
        CheckConstraint("descuento_porcentaje >= 0 AND descuento_porcentaje <= 100", name="ck_sale_items_pct"),
        CheckConstraint("descuento_monto >= 0", name="ck_sale_items_desc"),
        CheckConstraint("precio_con_descuento >= 0", name="ck_sale_items_precio_desc"),
        CheckConstraint("subtotal >= 0", name="ck_sale_items_subtotal"),
        Index("ix_sale_items_venta_producto", "venta_id", "producto_id"),
    )

    @validates("precio_unitario", "descuento_monto", "precio_con_descuento", "subtotal")
    def _val_money(self, key, value):
        return _as_money(value)


class Shipment(db.Model, TimestampMixin):
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True)
    lote_id = Column(String(30), nullable=False, index=True)
    venta_id = Column(Integer, ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    fecha_envio = Column(DateTime, default=datetime.now, nullable=False, index=True)
    estado_entrega = Column(DeliveryStatusEnum, default="pendiente", nullable=False, index=True)
    estado_pago_real = Column(RealPaymentEnum, default="pendiente", nullable=False, index=True)
    observaciones_distribuidor = Column(Text, nullable=True)
    fecha_actualizacion = Column(DateTime, nullable=True)
    actualizado_por_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    actualizado_por = relationship("User")

    __table_args__ = (
        UniqueConstraint("lote_id", "venta_id", name="uq_shipments_lote_venta"),
    )

    def __repr__(self):
        return f"<Shipment {self.id} {self.lote_id} venta={self.venta_id} {self.estado_entrega}/{self.estado_pago_real}>"


class StockMove(db.Model, TimestampMixin, AuditMixin):
    __tablename__ = "stock_moves"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    tipo = Column(StockMoveEnum, nullable=False, index=True)
    qtd = Column(Integer, nullable=False)
    ref_origem = Column(String(30), nullable=True)  # "sale"
    ref_id = Column(Integer, nullable=True)
    motivo = Column(String(200), nullable=True)

    product = relationship("Product")

    __table_args__ = (
        CheckConstraint("qtd > 0", name="ck_stock_moves_qtd_positiva"),
        Index("ix_stock_moves_product_created", "product_id", "created_at"),
    )


class AuditLog(db.Model, TimestampMixin):
    __tablename__ = "audit_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    entidade = Column(String(60), nullable=False)
    entidade_id = Column(Integer, nullable=True)
    acao = Column(String(60), nullable=False)  # created, updated, revised, deleted, batch_generated
    payload_json = Column(JSON, nullable=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    user = relationship("User")


# =============================================================================
# Índices
# =============================================================================

Index("ix_products_fragancia_lower", func.lower(Product.fragancia))
Index("ix_customers_apellido_lower", func.lower(Customer.apellido))


# =============================================================================
# Seeds
# =============================================================================

def ensure_operator():
    """
    Crea el operador por defecto si no existe.
    Usa las variables de entorno OPERATOR_EMAIL y OPERATOR_NAME.
    """
    email = os.getenv("OPERATOR_EMAIL", "operador@local").lower()
    nombre = os.getenv("OPERATOR_NAME", "Operador")

    user = User.query.filter_by(email=email).first()
    if not user:
        user = User(nombre=nombre, email=email, activo=True)
        db.session.add(user)
    db.session.commit()
    return user
