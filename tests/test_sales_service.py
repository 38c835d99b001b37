"""Sale creation, edits, revisions, deletion and line operations."""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal

import pytest

from app.extensions import db
from app.core import services
from app.core.errors import InvalidReferenceError, StateError, StockError, ValidationError
from app.core.models import Product, Sale, SaleItem, Shipment, StockMove, AuditLog
from app.core.services import (
    LineaVentaDTO, transaction, crear_venta, obtener_venta, editar_venta, corregir_venta,
    eliminar_venta, cambiar_estado_venta, agregar_item, actualizar_item, eliminar_item,
    validar_productos, reservar_stock, listar_ventas, ventas_por_cliente, verificar_stock_producto,
)


def _lock(sale_id, operador):
    with transaction():
        cambiar_estado_venta(sale_id, estado_venta="enviado", operador=operador)
    with transaction():
        cambiar_estado_venta(sale_id, estado_venta="entregado", estado_pago="pagado", operador=operador)


# ----------------------------------------------------------------------------
# Alta
# ----------------------------------------------------------------------------

def test_create_sale_round_trip(seed):
    with transaction():
        sale = crear_venta(
            cliente_id=seed.cliente.id,
            metodo_pago_id=seed.efectivo.id,
            lineas=[LineaVentaDTO(seed.producto.id, 3, Decimal("1000"), Decimal("10"))],
            operador=seed.operador,
            costo_envio=Decimal("500"),
        )
        sale_id = sale.id

    sale = obtener_venta(sale_id)
    assert sale.subtotal == Decimal("3000.00")
    assert sale.descuento_total == Decimal("300.00")
    assert sale.total == Decimal("3200.00")
    assert re.fullmatch(r"VTA-\d{6}-\d{6}", sale.numero_venta)
    assert sale.numero_venta.startswith(f"VTA-{sale.fecha:%m%Y}-")
    assert (sale.estado_venta, sale.estado_pago) == ("en_proceso", "pendiente")
    assert seed.producto.stock == 7

    moves = db.session.query(StockMove).filter_by(ref_id=sale_id).all()
    assert [(m.tipo, m.qtd) for m in moves] == [("reserva_venta", 3)]
    assert db.session.query(AuditLog).filter_by(entidade="Sale", acao="created").count() == 1


def test_unit_price_defaults_to_product_price(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto_b.id, 2)])

    assert sale.items[0].precio_unitario == Decimal("2500.00")
    assert sale.total == Decimal("5000.00")


def test_all_bad_products_reported_together(seed):
    lineas = [LineaVentaDTO(9999, 1), LineaVentaDTO(seed.inactivo.id, 1), LineaVentaDTO(seed.producto.id, 1)]

    with pytest.raises(InvalidReferenceError) as exc:
        with transaction():
            crear_venta(seed.cliente.id, seed.efectivo.id, lineas, seed.operador)

    motivos = {e["producto_id"]: e["motivo"] for e in exc.value.errors}
    assert motivos == {9999: "no_encontrado", seed.inactivo.id: "inactivo"}
    assert db.session.query(Sale).count() == 0
    assert seed.producto.stock == 10


def test_all_shortages_reported_and_nothing_written(seed):
    lineas = [LineaVentaDTO(seed.producto.id, 11), LineaVentaDTO(seed.producto_b.id, 6)]

    with pytest.raises(StockError) as exc:
        with transaction():
            crear_venta(seed.cliente.id, seed.efectivo.id, lineas, seed.operador)

    faltantes = {e["producto_id"]: (e["solicitado"], e["disponible"]) for e in exc.value.errors}
    assert faltantes == {seed.producto.id: (11, 10), seed.producto_b.id: (6, 5)}
    assert db.session.query(Sale).count() == 0
    assert (seed.producto.stock, seed.producto_b.stock) == (10, 5)


def test_repeated_product_lines_are_checked_together(seed):
    lineas = [LineaVentaDTO(seed.producto.id, 6), LineaVentaDTO(seed.producto.id, 6)]

    with pytest.raises(StockError):
        with transaction():
            crear_venta(seed.cliente.id, seed.efectivo.id, lineas, seed.operador)
    assert seed.producto.stock == 10


@pytest.mark.parametrize(
    "lineas",
    [
        [],
        [LineaVentaDTO(1, 0)],
        [LineaVentaDTO(1, 1, descuento_porcentaje=Decimal("120"))],
        [LineaVentaDTO(1, 1, precio_unitario=Decimal("-1"))],
    ],
)
def test_invalid_lines_rejected(seed, lineas):
    with pytest.raises(ValidationError):
        with transaction():
            crear_venta(seed.cliente.id, seed.efectivo.id, lineas, seed.operador)


def test_negative_shipping_rejected(seed):
    with pytest.raises(ValidationError):
        with transaction():
            crear_venta(seed.cliente.id, seed.efectivo.id, [LineaVentaDTO(seed.producto.id, 1)],
                        seed.operador, costo_envio=Decimal("-10"))


def test_payment_reference_required_when_method_demands_it(seed):
    with pytest.raises(ValidationError):
        with transaction():
            crear_venta(seed.cliente.id, seed.transferencia.id, [LineaVentaDTO(seed.producto.id, 1)], seed.operador)

    with transaction():
        sale = crear_venta(seed.cliente.id, seed.transferencia.id, [LineaVentaDTO(seed.producto.id, 1)],
                           seed.operador, referencia_pago="TRX-001")
    assert sale.referencia_pago == "TRX-001"


def test_inactive_customer_rejected(seed):
    seed.cliente.activo = False
    db.session.commit()

    with pytest.raises(InvalidReferenceError):
        with transaction():
            crear_venta(seed.cliente.id, seed.efectivo.id, [LineaVentaDTO(seed.producto.id, 1)], seed.operador)


def test_failure_after_reservation_rolls_everything_back(seed):
    with pytest.raises(StockError):
        with transaction():
            reservar_stock(seed.producto.id, 4, user=seed.operador)
            reservar_stock(seed.producto_b.id, 6, user=seed.operador)

    assert (seed.producto.stock, seed.producto_b.stock) == (10, 5)
    assert db.session.query(StockMove).count() == 0


# ----------------------------------------------------------------------------
# Edición y corrección
# ----------------------------------------------------------------------------

def test_edit_applies_stock_delta_per_product(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 3)])

    with transaction():
        editar_venta(sale.id, {"costo_envio": Decimal("300")}, [
            LineaVentaDTO(seed.producto.id, 5),
            LineaVentaDTO(seed.producto_b.id, 2),
        ], seed.operador)

    sale = obtener_venta(sale.id)
    assert seed.producto.stock == 5
    assert seed.producto_b.stock == 3
    assert sale.subtotal == Decimal("10000.00")
    assert sale.total == Decimal("10300.00")


def test_edit_decrease_releases_stock(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 4), LineaVentaDTO(seed.producto_b.id, 1)])

    with transaction():
        editar_venta(sale.id, lineas=[LineaVentaDTO(seed.producto.id, 1)], operador=seed.operador)

    assert seed.producto.stock == 9
    assert seed.producto_b.stock == 5
    assert len(obtener_venta(sale.id).items) == 1


def test_edit_shortage_reports_every_product_and_changes_nothing(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 2)])

    with pytest.raises(StockError) as exc:
        with transaction():
            editar_venta(sale.id, lineas=[
                LineaVentaDTO(seed.producto.id, 13),
                LineaVentaDTO(seed.producto_b.id, 9),
            ], operador=seed.operador)

    assert {e["producto_id"] for e in exc.value.errors} == {seed.producto.id, seed.producto_b.id}
    assert seed.producto.stock == 8
    assert [i.cantidad for i in obtener_venta(sale.id).items] == [2]


def test_edit_rejects_status_fields(seed, make_sale):
    sale = make_sale()

    with pytest.raises(ValidationError):
        with transaction():
            editar_venta(sale.id, {"estado_venta": "cancelado"}, operador=seed.operador)


def test_revision_never_touches_stock(seed, make_sale, caplog):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 2)])

    with caplog.at_level(logging.WARNING, logger="app.core.services"):
        with transaction():
            corregir_venta(sale.id, lineas=[LineaVentaDTO(seed.producto.id, 6)], operador=seed.operador)

    sale = obtener_venta(sale.id)
    assert sale.items[0].cantidad == 6
    assert sale.subtotal == Decimal("6000.00")
    assert seed.producto.stock == 8
    assert "sin mover stock" in caplog.text
    audit = db.session.query(AuditLog).filter_by(acao="revised").one()
    assert audit.payload_json["divergencias_stock"] == [
        {"producto_id": seed.producto.id, "anterior": 2, "nuevo": 6}
    ]


def test_locked_sale_rejects_every_mutation(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 2)])
    _lock(sale.id, seed.operador)
    item_id = obtener_venta(sale.id).items[0].id

    attempts = [
        lambda: editar_venta(sale.id, lineas=[LineaVentaDTO(seed.producto.id, 5)], operador=seed.operador),
        lambda: corregir_venta(sale.id, {"observaciones": "x"}, operador=seed.operador),
        lambda: agregar_item(sale.id, LineaVentaDTO(seed.producto_b.id, 1), seed.operador),
        lambda: actualizar_item(item_id, cantidad=3, operador=seed.operador),
        lambda: eliminar_item(item_id, seed.operador),
    ]
    for attempt in attempts:
        with pytest.raises(StateError):
            with transaction():
                attempt()

    assert seed.producto.stock == 8
    assert seed.producto_b.stock == 5


def test_cancelled_sale_is_locked(seed, make_sale):
    sale = make_sale()
    with transaction():
        cambiar_estado_venta(sale.id, estado_venta="cancelado", operador=seed.operador)

    with pytest.raises(StateError):
        with transaction():
            editar_venta(sale.id, {"observaciones": "tarde"}, operador=seed.operador)


def test_status_change_follows_transition_table(seed, make_sale):
    sale = make_sale()

    with pytest.raises(StateError):
        with transaction():
            cambiar_estado_venta(sale.id, estado_venta="entregado", operador=seed.operador)

    with transaction():
        cambiar_estado_venta(sale.id, estado_pago="pagado", operador=seed.operador)
    assert obtener_venta(sale.id).estado_pago == "pagado"


# ----------------------------------------------------------------------------
# Baja
# ----------------------------------------------------------------------------

def test_delete_restores_stock_and_removes_children(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 3), LineaVentaDTO(seed.producto_b.id, 2)])
    db.session.add(Shipment(lote_id="ENV-20261017-1000-01", venta_id=sale.id))
    db.session.commit()
    sale_id = sale.id

    with transaction():
        eliminar_venta(sale_id, seed.operador)

    assert (seed.producto.stock, seed.producto_b.stock) == (10, 5)
    assert db.session.get(Sale, sale_id) is None
    assert db.session.query(SaleItem).count() == 0
    assert db.session.query(Shipment).count() == 0


def test_delete_missing_sale(seed):
    with pytest.raises(InvalidReferenceError):
        with transaction():
            eliminar_venta(4242, seed.operador)


def test_locked_sale_can_still_be_deleted(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 2)])
    _lock(sale.id, seed.operador)

    with transaction():
        eliminar_venta(sale.id, seed.operador)
    assert seed.producto.stock == 10


# ----------------------------------------------------------------------------
# Líneas
# ----------------------------------------------------------------------------

def test_add_item_reserves_and_recomputes(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 1)])

    with transaction():
        agregar_item(sale.id, LineaVentaDTO(seed.producto_b.id, 2, descuento_porcentaje=Decimal("10")), seed.operador)

    sale = obtener_venta(sale.id)
    assert seed.producto_b.stock == 3
    assert sale.subtotal == Decimal("6000.00")
    assert sale.descuento_total == Decimal("500.00")
    assert sale.total == Decimal("5500.00")


def test_add_item_rejects_product_already_in_sale(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 1)])

    with pytest.raises(ValidationError):
        with transaction():
            agregar_item(sale.id, LineaVentaDTO(seed.producto.id, 1), seed.operador)


def test_update_item_applies_quantity_delta(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 2)])
    item_id = sale.items[0].id

    with transaction():
        actualizar_item(item_id, cantidad=6, operador=seed.operador)
    assert seed.producto.stock == 4

    with transaction():
        actualizar_item(item_id, cantidad=1, descuento_porcentaje=Decimal("50"), operador=seed.operador)
    sale = obtener_venta(sale.id)
    assert seed.producto.stock == 9
    assert sale.items[0].subtotal == Decimal("500.00")
    assert sale.total == Decimal("500.00")


def test_update_item_beyond_stock(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 2)])

    with pytest.raises(StockError):
        with transaction():
            actualizar_item(sale.items[0].id, cantidad=13, operador=seed.operador)
    assert seed.producto.stock == 8


def test_remove_item_keeps_at_least_one_line(seed, make_sale):
    sale = make_sale([LineaVentaDTO(seed.producto.id, 2), LineaVentaDTO(seed.producto_b.id, 1)])
    first, second = (i.id for i in sale.items)

    with transaction():
        eliminar_item(second, seed.operador)
    assert seed.producto_b.stock == 5
    assert obtener_venta(sale.id).total == Decimal("2000.00")

    with pytest.raises(ValidationError):
        with transaction():
            eliminar_item(first, seed.operador)


def test_validate_products(seed):
    result = validar_productos([seed.producto.id, seed.inactivo.id, 777])

    assert [p["id"] for p in result["valid_products"]] == [seed.producto.id]
    assert result["invalid_product_ids"] == [seed.inactivo.id, 777]
    assert result["all_valid"] is False


def test_get_missing_sale(app):
    with pytest.raises(InvalidReferenceError):
        obtener_venta(1)


# ----------------------------------------------------------------------------
# Listados y disponibilidad
# ----------------------------------------------------------------------------

def _sale_on(monkeypatch, make_sale, cuando, **kwargs):
    monkeypatch.setattr(services, "_now", lambda: cuando)
    return make_sale(**kwargs)


def test_list_sales_filters_and_orders(seed, make_sale, monkeypatch):
    vieja = _sale_on(monkeypatch, make_sale, datetime(2026, 9, 30, 23, 59))
    media = _sale_on(monkeypatch, make_sale, datetime(2026, 10, 5, 12, 0), cliente=seed.cliente_sin_direccion)
    nueva = _sale_on(monkeypatch, make_sale, datetime(2026, 10, 12, 8, 0))
    with transaction():
        cambiar_estado_venta(nueva.id, estado_pago="pagado", operador=seed.operador)

    todas = listar_ventas()
    assert [s["id"] for s in todas["data"]] == [nueva.id, media.id, vieja.id]
    assert todas["pagination"] == {"total": 3, "page": 1, "limit": 50, "totalPages": 1}

    assert [s["id"] for s in listar_ventas(cliente_id=seed.cliente.id)["data"]] == [nueva.id, vieja.id]
    assert [s["id"] for s in listar_ventas(estado_pago="pagado")["data"]] == [nueva.id]
    assert [s["id"] for s in listar_ventas(search=media.numero_venta[4:])["data"]] == [media.id]

    # fecha_hasta incluye el día completo
    septiembre = listar_ventas(fecha_desde=date(2026, 9, 1), fecha_hasta=date(2026, 9, 30))
    assert [s["id"] for s in septiembre["data"]] == [vieja.id]


def test_list_sales_pagination(seed, make_sale):
    for _ in range(3):
        make_sale()

    segunda = listar_ventas(page=2, limit=2)
    assert len(segunda["data"]) == 1
    assert segunda["pagination"] == {"total": 3, "page": 2, "limit": 2, "totalPages": 2}
    assert listar_ventas(page=5, limit=2)["data"] == []


def test_sales_by_customer(seed, make_sale):
    propias = [make_sale(), make_sale()]
    make_sale(cliente=seed.cliente_sin_direccion)

    result = ventas_por_cliente(seed.cliente.id)
    assert {s["id"] for s in result["data"]} == {s.id for s in propias}
    assert result["pagination"]["limit"] == 10
    assert result["pagination"]["total"] == 2

    with pytest.raises(InvalidReferenceError):
        ventas_por_cliente(4040)


def test_product_stock_check(seed):
    justo = verificar_stock_producto(seed.producto_b.id, 5)
    assert justo["disponible"] is True
    assert (justo["stock_disponible"], justo["cantidad_solicitada"], justo["precio"]) == (5, 5, "2500.00")

    assert verificar_stock_producto(seed.producto_b.id, 6)["disponible"] is False
    inactivo = verificar_stock_producto(seed.inactivo.id)
    assert (inactivo["activo"], inactivo["disponible"]) == (False, False)
    assert db.session.get(Product, seed.producto_b.id).stock == 5

    with pytest.raises(InvalidReferenceError):
        verificar_stock_producto(777)
    with pytest.raises(ValidationError):
        verificar_stock_producto(seed.producto.id, 0)
