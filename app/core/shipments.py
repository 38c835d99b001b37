# app/core/shipments.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, case
from sqlalchemy.orm import selectinload

from app.extensions import db
from app.core import lifecycle
from app.core.errors import (
    ValidationError, InvalidReferenceError, StateError, EmptySelectionError, ensure,
)
from app.core.models import User, Customer, Sale, Shipment
from app.core.services import _now, audit_log, next_sequence

logger = logging.getLogger(__name__)

BATCH_PREFIX = "ENV"

# Campos de domicilio sin los cuales no se despacha
REQUIRED_ADDRESS_FIELDS = ("calle", "altura", "codigo_postal", "localidad", "provincia")

DELIVERY_STATUSES = ("pendiente", "entregado", "no_encontrado", "reprogramado", "cancelado")
REAL_PAYMENT_STATUSES = ("pendiente", "pagado", "rechazado")


# =============================================================================
# Domicilio
# =============================================================================

def build_full_address(customer: Optional[Customer]) -> str:
    """
    "Calle 123, Piso 2, Dpto B, CP 1000, Localidad, Provincia (aclaración)".
    Omite las partes vacías.
    """
    if customer is None:
        return ""
    partes = []
    calle = " ".join(p for p in (customer.calle, customer.altura) if p)
    if calle:
        partes.append(calle)
    if customer.piso:
        partes.append(f"Piso {customer.piso}")
    if customer.dpto:
        partes.append(f"Dpto {customer.dpto}")
    if customer.codigo_postal:
        partes.append(f"CP {customer.codigo_postal}")
    if customer.localidad:
        partes.append(customer.localidad)
    if customer.provincia:
        partes.append(customer.provincia)
    direccion = ", ".join(partes)
    if customer.aclaracion:
        direccion = f"{direccion} ({customer.aclaracion})" if direccion else f"({customer.aclaracion})"
    return direccion

def missing_address_fields(customer: Optional[Customer]) -> List[str]:
    if customer is None:
        return list(REQUIRED_ADDRESS_FIELDS)
    return [f for f in REQUIRED_ADDRESS_FIELDS if not (getattr(customer, f) or "").strip()]


# =============================================================================
# Candidatas
# =============================================================================

def _day_range(dia: date):
    inicio = datetime.combine(dia, time.min)
    return inicio, inicio + timedelta(days=1)

def _open_shipment_exists():
    return (
        select(Shipment.id)
        .where(Shipment.venta_id == Sale.id, Shipment.estado_entrega == "pendiente")
        .exists()
    )

def _candidatas_query(fecha: Optional[date] = None):
    q = (
        select(Sale)
        .where(Sale.estado_venta.in_(sorted(lifecycle.SHIPPABLE)))
        .where(~_open_shipment_exists())
        .options(selectinload(Sale.cliente), selectinload(Sale.items))
        .order_by(Sale.fecha, Sale.id)
    )
    if fecha is not None:
        inicio, fin = _day_range(fecha)
        q = q.where(Sale.fecha >= inicio, Sale.fecha < fin)
    return q

def _es_candidata(sale: Sale, abiertos: set) -> bool:
    return lifecycle.can_ship(sale) and sale.id not in abiertos

def ventas_pendientes_envio(fecha: Optional[date] = None) -> List[Dict[str, Any]]:
    ventas = [
        s for s in db.session.execute(_candidatas_query(fecha)).scalars().all()
        if lifecycle.can_ship(s)
    ]
    return [
        {
            "venta_id": s.id,
            "numero_venta": s.numero_venta,
            "fecha": s.fecha.isoformat() if s.fecha else None,
            "cliente": s.cliente.nombre_completo if s.cliente else None,
            "telefono": s.cliente.telefono if s.cliente else None,
            "direccion": build_full_address(s.cliente),
            "faltantes_direccion": missing_address_fields(s.cliente),
            "total": str(s.total),
            "items": sum(i.cantidad for i in s.items),
            "estado_venta": s.estado_venta,
            "estado_pago": s.estado_pago,
        }
        for s in ventas
    ]


# =============================================================================
# Generación de lotes
# =============================================================================

@dataclass
class BatchResult:
    lote_id: str
    ventas: int
    total_items: int
    shipment_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lote_id": self.lote_id,
            "ventas": self.ventas,
            "total_items": self.total_items,
            "shipment_ids": list(self.shipment_ids),
        }

def _lotes_del_dia(dia: datetime) -> int:
    return db.session.execute(
        select(func.count(func.distinct(Shipment.lote_id)))
        .where(Shipment.lote_id.like(f"{BATCH_PREFIX}-{dia:%Y%m%d}-%"))
    ).scalar_one()

def next_batch_id(ahora: Optional[datetime] = None) -> str:
    """``ENV-YYYYMMDD-HHMM-NN``; NN es el contador serializado del día."""
    ahora = ahora or _now()
    nn = next_sequence(f"lote:{ahora:%Y%m%d}", seed=lambda: _lotes_del_dia(ahora))
    return f"{BATCH_PREFIX}-{ahora:%Y%m%d}-{ahora:%H%M}-{nn:02d}"

def _ventas_explicitas(venta_ids: List[int]) -> List[Sale]:
    ids = sorted({int(i) for i in venta_ids})
    ventas = db.session.execute(
        select(Sale).where(Sale.id.in_(ids))
        .options(selectinload(Sale.cliente), selectinload(Sale.items))
        .order_by(Sale.id)
        .with_for_update()
    ).scalars().all()
    encontradas = {s.id for s in ventas}
    faltantes = [i for i in ids if i not in encontradas]
    ensure(not faltantes, "Ventas no encontradas", InvalidReferenceError,
           [{"venta_id": i} for i in faltantes])

    abiertos = set(db.session.execute(
        select(Shipment.venta_id).where(Shipment.venta_id.in_(ids), Shipment.estado_entrega == "pendiente")
    ).scalars())
    no_elegibles = []
    for s in ventas:
        if not _es_candidata(s, abiertos):
            info = lifecycle.status_info(s)
            info["envio_abierto"] = s.id in abiertos
            no_elegibles.append(info)
    ensure(not no_elegibles, "Algunas ventas no pueden incluirse en un lote", StateError, no_elegibles)
    return ventas

def _verificar_domicilios(ventas: List[Sale]) -> None:
    incompletas = []
    for s in ventas:
        faltan = missing_address_fields(s.cliente)
        if faltan:
            incompletas.append({
                "venta_id": s.id,
                "numero_venta": s.numero_venta,
                "cliente": s.cliente.nombre_completo if s.cliente else None,
                "faltantes": faltan,
                "direccion_actual": build_full_address(s.cliente),
            })
    if incompletas:
        raise ValidationError(
            f"{len(incompletas)} venta(s) sin dirección completa; complete los datos del cliente antes de generar el lote",
            incompletas,
        )

def generar_lote(
    venta_ids: Optional[List[int]] = None,
    fecha: Optional[date] = None,
    operador: Optional[User] = None,
) -> BatchResult:
    """
    Arma un lote con las ventas indicadas, o con todas las candidatas (del día
    ``fecha`` si se indica). Todas las verificaciones van antes de escribir:
    un domicilio incompleto cancela el lote entero.
    """
    if venta_ids:
        ventas = _ventas_explicitas(venta_ids)
    else:
        ventas = [s for s in db.session.execute(_candidatas_query(fecha)).scalars().all() if lifecycle.can_ship(s)]
    if not ventas:
        raise EmptySelectionError("No hay ventas pendientes de envío")
    _verificar_domicilios(ventas)

    ahora = _now()
    lote_id = next_batch_id(ahora)
    envios = []
    for s in ventas:
        envio = Shipment(
            lote_id=lote_id,
            venta_id=s.id,
            fecha_envio=ahora,
            estado_entrega="pendiente",
            estado_pago_real="pendiente",
        )
        db.session.add(envio)
        envios.append(envio)
        lifecycle.apply_transition(s, estado_venta=lifecycle.ENVIADO)
        s.updated_by_id = operador.id if operador else None
    db.session.flush()

    result = BatchResult(
        lote_id=lote_id,
        ventas=len(ventas),
        total_items=sum(i.cantidad for s in ventas for i in s.items),
        shipment_ids=[e.id for e in envios],
    )
    audit_log("Shipment", None, "batch_generated", result.to_dict(), operador)
    logger.info("Lote %s generado con %d ventas", lote_id, result.ventas)
    return result


# =============================================================================
# Estados de envío
# =============================================================================

def _aplicar_estado_envio(
    envio: Shipment,
    estado_entrega: Optional[str],
    estado_pago_real: Optional[str],
    observaciones: Optional[str],
    operador: Optional[User],
) -> None:
    if estado_entrega is not None:
        ensure(estado_entrega in DELIVERY_STATUSES, f"Estado de entrega inválido: {estado_entrega}")
    if estado_pago_real is not None:
        ensure(estado_pago_real in REAL_PAYMENT_STATUSES, f"Estado de pago inválido: {estado_pago_real}")

    sale = db.session.execute(
        select(Sale).where(Sale.id == envio.venta_id).with_for_update()
    ).scalar_one()
    # las dos propagaciones son independientes pero se validan juntas
    lifecycle.apply_transition(
        sale,
        estado_venta=lifecycle.DELIVERY_TO_SALE.get(estado_entrega),
        estado_pago=lifecycle.REAL_PAYMENT_TO_SALE.get(estado_pago_real),
    )

    if estado_entrega is not None:
        envio.estado_entrega = estado_entrega
    if estado_pago_real is not None:
        envio.estado_pago_real = estado_pago_real
    if observaciones is not None:
        envio.observaciones_distribuidor = observaciones
    envio.fecha_actualizacion = _now()
    envio.actualizado_por_id = operador.id if operador else None

def actualizar_envio(
    shipment_id: int,
    estado_entrega: Optional[str] = None,
    estado_pago_real: Optional[str] = None,
    observaciones: Optional[str] = None,
    operador: Optional[User] = None,
) -> Shipment:
    envio = db.session.get(Shipment, shipment_id)
    ensure(envio is not None, f"Envío {shipment_id} no encontrado", InvalidReferenceError,
           [{"envio_id": shipment_id}])
    _aplicar_estado_envio(envio, estado_entrega, estado_pago_real, observaciones, operador)
    audit_log("Shipment", envio.id, "status_changed", {
        "estado_entrega": envio.estado_entrega, "estado_pago_real": envio.estado_pago_real,
    }, operador)
    return envio

def actualizar_lote(lote_id: str, updates: List[Dict[str, Any]], operador: Optional[User] = None) -> List[Dict[str, Any]]:
    """
    Una sola unidad de trabajo. Cada elemento de ``updates`` trae ``shipment_id``
    y los estados; el envío tiene que pertenecer al lote. Resultado por miembro:
    updated / not_found / rejected.

    Un lote sin envíos no es un error: todos sus miembros salen como not_found.
    """
    ensure(updates, "Debe indicar al menos una actualización")
    envios = {
        e.id: e
        for e in db.session.execute(select(Shipment).where(Shipment.lote_id == lote_id)).scalars()
    }
    if not envios:
        logger.warning("Lote %s sin envíos", lote_id)

    resultados = []
    for upd in updates:
        shipment_id = upd.get("shipment_id")
        envio = envios.get(shipment_id)
        if envio is None:
            resultados.append({"shipment_id": shipment_id, "status": "not_found"})
            continue
        try:
            _aplicar_estado_envio(
                envio,
                upd.get("estado_entrega"),
                upd.get("estado_pago_real"),
                upd.get("observaciones"),
                operador,
            )
        except (StateError, ValidationError) as e:
            logger.warning("Lote %s: envío %s rechazado: %s", lote_id, shipment_id, e.message)
            resultados.append({"shipment_id": shipment_id, "status": "rejected", "reason": e.message})
            continue
        resultados.append({
            "shipment_id": shipment_id,
            "status": "updated",
            "numero_venta": envio.venta.numero_venta,
        })

    audit_log("Shipment", None, "batch_updated", {"lote_id": lote_id, "resultados": resultados}, operador)
    return resultados


# =============================================================================
# Consultas
# =============================================================================

def listar_lotes(fecha: Optional[date] = None) -> List[Dict[str, Any]]:
    q = (
        select(
            Shipment.lote_id,
            func.min(Shipment.fecha_envio).label("fecha_envio"),
            func.count(Shipment.id).label("ventas"),
            func.sum(case((Shipment.estado_entrega == "entregado", 1), else_=0)).label("entregados"),
            func.sum(case((Shipment.estado_entrega == "pendiente", 1), else_=0)).label("pendientes"),
            func.sum(case((Shipment.estado_pago_real == "pagado", 1), else_=0)).label("pagados"),
        )
        .group_by(Shipment.lote_id)
        .order_by(func.min(Shipment.fecha_envio).desc())
    )
    if fecha is not None:
        inicio, fin = _day_range(fecha)
        q = q.where(Shipment.fecha_envio >= inicio, Shipment.fecha_envio < fin)
    return [
        {
            "lote_id": r.lote_id,
            "fecha_envio": r.fecha_envio.isoformat() if r.fecha_envio else None,
            "ventas": r.ventas,
            "entregados": int(r.entregados or 0),
            "pendientes": int(r.pendientes or 0),
            "pagados": int(r.pagados or 0),
        }
        for r in db.session.execute(q)
    ]

def shipment_to_dict(envio: Shipment) -> Dict[str, Any]:
    sale = envio.venta
    return {
        "id": envio.id,
        "lote_id": envio.lote_id,
        "venta_id": envio.venta_id,
        "numero_venta": sale.numero_venta if sale else None,
        "cliente": sale.cliente.nombre_completo if sale and sale.cliente else None,
        "direccion": build_full_address(sale.cliente) if sale else "",
        "total": str(sale.total) if sale else None,
        "estado_venta": sale.estado_venta if sale else None,
        "estado_pago": sale.estado_pago if sale else None,
        "fecha_envio": envio.fecha_envio.isoformat() if envio.fecha_envio else None,
        "estado_entrega": envio.estado_entrega,
        "estado_pago_real": envio.estado_pago_real,
        "observaciones_distribuidor": envio.observaciones_distribuidor,
        "fecha_actualizacion": envio.fecha_actualizacion.isoformat() if envio.fecha_actualizacion else None,
        "actualizado_por": envio.actualizado_por.nombre if envio.actualizado_por else None,
    }

def envios_por_lote(lote_id: str) -> List[Shipment]:
    envios = db.session.execute(
        select(Shipment)
        .where(Shipment.lote_id == lote_id)
        .options(selectinload(Shipment.venta).selectinload(Sale.cliente))
        .order_by(Shipment.id)
    ).scalars().all()
    ensure(envios, f"Lote {lote_id} no encontrado", InvalidReferenceError, [{"lote_id": lote_id}])
    return envios
