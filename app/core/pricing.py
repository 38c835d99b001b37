# app/core/pricing.py
"""
Cálculo de montos de venta.

Funciones puras: se invocan explícitamente en cada punto que cambia cantidades,
precios, descuentos o costo de envío. Ningún hook de ORM recalcula totales.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from app.core.models import _as_money

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class LineAmounts:
    precio_unitario: Decimal
    descuento_porcentaje: Decimal
    descuento_monto: Decimal        # por unidad
    precio_con_descuento: Decimal
    cantidad: int
    subtotal: Decimal


@dataclass(frozen=True)
class SaleTotals:
    subtotal: Decimal
    descuento_total: Decimal
    costo_envio: Decimal
    total: Decimal


def compute_line_subtotal(precio_unitario, descuento_porcentaje, cantidad: int) -> LineAmounts:
    precio = _as_money(precio_unitario)
    pct = Decimal(str(descuento_porcentaje or 0)).quantize(Decimal("0.01"))
    descuento = _as_money(precio * pct / HUNDRED) if pct > 0 else _as_money(0)
    precio_desc = _as_money(precio - descuento)
    return LineAmounts(
        precio_unitario=precio,
        descuento_porcentaje=pct,
        descuento_monto=descuento,
        precio_con_descuento=precio_desc,
        cantidad=int(cantidad),
        subtotal=_as_money(precio_desc * int(cantidad)),
    )


def compute_sale_total(lines: Iterable, costo_envio) -> SaleTotals:
    """
    ``lines``: objetos con ``precio_unitario``, ``descuento_monto`` y ``cantidad``
    (LineAmounts o SaleItem persistidos).

    subtotal = Σ precio_unitario × cantidad
    descuento_total = Σ descuento_monto × cantidad
    total = subtotal − descuento_total + costo_envio
    """
    subtotal = _as_money(0)
    descuento_total = _as_money(0)
    for ln in lines:
        subtotal += _as_money(ln.precio_unitario) * int(ln.cantidad)
        descuento_total += _as_money(ln.descuento_monto) * int(ln.cantidad)
    envio = _as_money(costo_envio)
    subtotal = _as_money(subtotal)
    descuento_total = _as_money(descuento_total)
    return SaleTotals(
        subtotal=subtotal,
        descuento_total=descuento_total,
        costo_envio=envio,
        total=_as_money(subtotal - descuento_total + envio),
    )


def apply_line(item, amounts: LineAmounts) -> None:
    item.precio_unitario = amounts.precio_unitario
    item.descuento_porcentaje = amounts.descuento_porcentaje
    item.descuento_monto = amounts.descuento_monto
    item.precio_con_descuento = amounts.precio_con_descuento
    item.cantidad = amounts.cantidad
    item.subtotal = amounts.subtotal


def apply_totals(sale, totals: SaleTotals) -> None:
    sale.subtotal = totals.subtotal
    sale.descuento_total = totals.descuento_total
    sale.costo_envio = totals.costo_envio
    sale.total = totals.total
