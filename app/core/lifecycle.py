# app/core/lifecycle.py
"""
Ciclo de vida de la venta.

Única tabla de transiciones de ``estado_venta`` / ``estado_pago``. Toda
operación que cambia estados o muta una venta la consulta acá.
"""
from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from app.core.errors import StateError, ValidationError

EN_PROCESO = "en_proceso"
ENVIADO = "enviado"
ENTREGADO = "entregado"
REPROGRAMADO = "reprogramado"
CANCELADO = "cancelado"

PENDIENTE = "pendiente"
PAGADO = "pagado"

SALE_STATUSES = (EN_PROCESO, ENVIADO, ENTREGADO, REPROGRAMADO, CANCELADO)
PAYMENT_STATUSES = (PENDIENTE, PAGADO)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    EN_PROCESO: frozenset({ENVIADO, CANCELADO}),
    ENVIADO: frozenset({ENTREGADO, CANCELADO, REPROGRAMADO}),
    REPROGRAMADO: frozenset({ENVIADO, CANCELADO}),
    ENTREGADO: frozenset(),
    CANCELADO: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDIENTE: frozenset({PAGADO}),
    PAGADO: frozenset({PENDIENTE}),
}

# Estados desde los que una venta puede entrar en un lote
SHIPPABLE = frozenset({EN_PROCESO, REPROGRAMADO})

# estado_entrega / estado_pago_real del envío -> estado de la venta
DELIVERY_TO_SALE = {
    "entregado": ENTREGADO,
    "cancelado": CANCELADO,
    "reprogramado": REPROGRAMADO,
}
REAL_PAYMENT_TO_SALE = {
    "pagado": PAGADO,
    "rechazado": PENDIENTE,
}


def is_completed(sale) -> bool:
    return sale.estado_venta == ENTREGADO and sale.estado_pago == PAGADO


def can_edit(sale) -> bool:
    # Entregada sin pagar sigue editable para registrar el pago
    return not is_completed(sale) and sale.estado_venta != CANCELADO


def ensure_editable(sale) -> None:
    if not can_edit(sale):
        raise StateError(
            "No se puede modificar una venta cancelada o completamente finalizada (entregada y pagada)",
            [status_info(sale)],
        )


def can_ship(sale) -> bool:
    return can_edit(sale) and sale.estado_venta in SHIPPABLE


def can_transition(current: str, target: str) -> bool:
    return current == target or target in TRANSITIONS.get(current, frozenset())


def can_transition_payment(current: str, target: str) -> bool:
    return current == target or target in PAYMENT_TRANSITIONS.get(current, frozenset())


def apply_transition(sale, estado_venta: Optional[str] = None, estado_pago: Optional[str] = None) -> bool:
    """
    Aplica los cambios de estado pedidos. Valida todo antes de escribir.
    Devuelve True si algo cambió.
    """
    if estado_venta is not None and estado_venta not in SALE_STATUSES:
        raise ValidationError(f"Estado de venta inválido: {estado_venta}",
                              [{"campo": "estado_venta", "motivo": "valor desconocido"}])
    if estado_pago is not None and estado_pago not in PAYMENT_STATUSES:
        raise ValidationError(f"Estado de pago inválido: {estado_pago}",
                              [{"campo": "estado_pago", "motivo": "valor desconocido"}])

    cambia_venta = estado_venta is not None and estado_venta != sale.estado_venta
    cambia_pago = estado_pago is not None and estado_pago != sale.estado_pago
    if not (cambia_venta or cambia_pago):
        return False

    ensure_editable(sale)
    if cambia_venta and not can_transition(sale.estado_venta, estado_venta):
        raise StateError(
            f"Transición no permitida: {sale.estado_venta} -> {estado_venta}",
            [status_info(sale)],
        )
    if cambia_pago and not can_transition_payment(sale.estado_pago, estado_pago):
        raise StateError(
            f"Transición de pago no permitida: {sale.estado_pago} -> {estado_pago}",
            [status_info(sale)],
        )

    if cambia_venta:
        sale.estado_venta = estado_venta
    if cambia_pago:
        sale.estado_pago = estado_pago
    return True


def status_info(sale) -> dict:
    return {
        "venta_id": sale.id,
        "numero_venta": sale.numero_venta,
        "estado_venta": sale.estado_venta,
        "estado_pago": sale.estado_pago,
        "can_edit": can_edit(sale),
        "is_completed": is_completed(sale),
    }
