# app/views/sales.py
from __future__ import annotations

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from app.core.forms import (
    SaleForm, SaleEditForm, SaleStatusForm, ItemUpdateForm, ProductIdsForm,
    StockQueryForm, PageForm, SaleFilterForm,
    json_formdata, parse_lineas, validate_or_raise,
)
from app.core.services import (
    transaction, crear_venta, obtener_venta, sale_to_dict, item_to_dict,
    editar_venta, corregir_venta, cambiar_estado_venta, eliminar_venta,
    agregar_item, actualizar_item, eliminar_item, validar_productos,
    verificar_stock_producto, listar_ventas, ventas_por_cliente,
)

bp = Blueprint("sales", __name__)


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def _venta_json(sale_id: int, status: int = 200, message: str = None):
    body = {"status": "success", "data": sale_to_dict(obtener_venta(sale_id))}
    if message:
        body["message"] = message
    return jsonify(body), status


@bp.post("/")
@login_required
def sale_create():
    payload = _payload()
    form = SaleForm(formdata=json_formdata(payload))
    validate_or_raise(form, "Datos de venta inválidos")
    lineas = parse_lineas(payload.get("items"))
    with transaction():
        sale = crear_venta(
            cliente_id=form.cliente_id.data,
            metodo_pago_id=form.metodo_pago_id.data,
            lineas=lineas,
            operador=current_user,
            referencia_pago=form.referencia_pago.data,
            costo_envio=form.costo_envio.data or 0,
            observaciones=form.observaciones.data,
        )
        sale_id = sale.id
    return _venta_json(sale_id, 201, "Venta creada correctamente")

@bp.get("/<int:sale_id>")
@login_required
def sale_detail(sale_id: int):
    return _venta_json(sale_id)

def _edit(sale_id: int, operacion):
    payload = _payload()
    form = SaleEditForm(formdata=json_formdata(payload))
    validate_or_raise(form, "Datos de venta inválidos")
    lineas = parse_lineas(payload.get("items"), requerido=False)
    with transaction():
        operacion(sale_id, form.campos(payload), lineas, current_user)
    return _venta_json(sale_id, message="Venta actualizada correctamente")

@bp.put("/<int:sale_id>")
@login_required
def sale_update(sale_id: int):
    return _edit(sale_id, editar_venta)

@bp.put("/<int:sale_id>/revision")
@login_required
def sale_revise(sale_id: int):
    return _edit(sale_id, corregir_venta)

@bp.patch("/<int:sale_id>/status")
@login_required
def sale_status(sale_id: int):
    form = SaleStatusForm(formdata=json_formdata(_payload()))
    validate_or_raise(form, "Estado inválido")
    with transaction():
        cambiar_estado_venta(
            sale_id,
            estado_venta=form.estado_venta.data or None,
            estado_pago=form.estado_pago.data or None,
            operador=current_user,
        )
    return _venta_json(sale_id, message="Estado actualizado correctamente")

@bp.delete("/<int:sale_id>")
@login_required
def sale_delete(sale_id: int):
    with transaction():
        numero = eliminar_venta(sale_id, current_user)
    return jsonify(status="success", message=f"Venta {numero} eliminada y stock restaurado")

@bp.post("/<int:sale_id>/items")
@login_required
def item_add(sale_id: int):
    linea = parse_lineas([_payload()])[0]
    with transaction():
        item = agregar_item(sale_id, linea, current_user)
        data = item_to_dict(item)
    return jsonify(status="success", data=data), 201

@bp.put("/items/<int:item_id>")
@login_required
def item_update(item_id: int):
    form = ItemUpdateForm(formdata=json_formdata(_payload()))
    validate_or_raise(form, "Datos de línea inválidos")
    with transaction():
        item = actualizar_item(
            item_id,
            cantidad=form.cantidad.data,
            descuento_porcentaje=form.descuento_porcentaje.data,
            precio_unitario=form.precio_unitario.data,
            operador=current_user,
        )
        data = item_to_dict(item)
    return jsonify(status="success", data=data)

@bp.delete("/items/<int:item_id>")
@login_required
def item_delete(item_id: int):
    with transaction():
        sale = eliminar_item(item_id, current_user)
        sale_id = sale.id
    return _venta_json(sale_id, message="Producto eliminado de la venta")

@bp.post("/validate-products")
@login_required
def products_validate():
    form = ProductIdsForm(formdata=json_formdata(_payload()))
    validate_or_raise(form)
    return jsonify(status="success", data=validar_productos(form.product_ids.data))

@bp.get("/products/<int:product_id>/stock")
@login_required
def product_stock(product_id: int):
    form = StockQueryForm(formdata=request.args)
    validate_or_raise(form, "Cantidad inválida")
    return jsonify(status="success", data=verificar_stock_producto(product_id, form.cantidad.data))


# Listados
@bp.get("/")
@login_required
def sale_list():
    form = SaleFilterForm(formdata=request.args)
    validate_or_raise(form, "Filtros inválidos")
    return jsonify(status="success", **listar_ventas(**form.filtros()))

@bp.get("/customer/<int:cliente_id>")
@login_required
def sales_by_customer(cliente_id: int):
    form = PageForm(formdata=request.args)
    validate_or_raise(form, "Paginación inválida")
    return jsonify(status="success", **ventas_por_cliente(cliente_id, form.page.data, form.limit.data))
