# app/views/shipments.py
from __future__ import annotations

from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from app.core.forms import (
    BatchGenerateForm, ShipmentStatusForm, json_formdata, parse_batch_updates, validate_or_raise,
)
from app.core.services import transaction
from app.core.shipments import (
    ventas_pendientes_envio, generar_lote, actualizar_envio, actualizar_lote,
    listar_lotes, envios_por_lote, shipment_to_dict,
)

bp = Blueprint("shipments", __name__)


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def _fecha_query():
    # ?fecha=YYYY-MM-DD
    form = BatchGenerateForm(formdata=json_formdata({"fecha": request.args.get("fecha")}))
    validate_or_raise(form, "Fecha inválida")
    return form.fecha.data


@bp.get("/pending")
@login_required
def pending():
    ventas = ventas_pendientes_envio(_fecha_query())
    return jsonify(status="success", data=ventas, count=len(ventas))

@bp.get("/batches")
@login_required
def batches():
    return jsonify(status="success", data=listar_lotes(_fecha_query()))

@bp.get("/batches/<lote_id>")
@login_required
def batch_detail(lote_id: str):
    envios = envios_por_lote(lote_id)
    return jsonify(status="success", lote_id=lote_id, data=[shipment_to_dict(e) for e in envios])

@bp.post("/batches")
@login_required
def batch_generate():
    form = BatchGenerateForm(formdata=json_formdata(_payload()))
    validate_or_raise(form, "Datos de lote inválidos")
    with transaction():
        result = generar_lote(form.venta_ids.data or None, form.fecha.data, current_user)
    return jsonify(status="success", message=f"Lote {result.lote_id} generado", data=result.to_dict()), 201

@bp.patch("/<int:shipment_id>")
@login_required
def shipment_update(shipment_id: int):
    form = ShipmentStatusForm(formdata=json_formdata(_payload()))
    validate_or_raise(form, "Estado de envío inválido")
    with transaction():
        envio = actualizar_envio(
            shipment_id,
            estado_entrega=form.estado_entrega.data or None,
            estado_pago_real=form.estado_pago_real.data or None,
            observaciones=form.observaciones.data,
            operador=current_user,
        )
        data = shipment_to_dict(envio)
    return jsonify(status="success", data=data)

@bp.put("/batches/<lote_id>")
@login_required
def batch_update(lote_id: str):
    updates = parse_batch_updates(_payload().get("updates"))
    with transaction():
        resultados = actualizar_lote(lote_id, updates, current_user)
    return jsonify(
        status="success",
        lote_id=lote_id,
        data=resultados,
        actualizados=sum(1 for r in resultados if r["status"] == "updated"),
    )
