# app/core/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """
    Base de los errores del núcleo.
    ``errors`` lleva la lista completa de causas (nunca sólo la primera).
    """
    code = "service_error"
    http_status = 400

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "code": self.code,
            "message": self.message,
            "errors": self.errors,
        }


class ValidationError(ServiceError):
    code = "validation_error"
    http_status = 400


class InvalidReferenceError(ServiceError):
    """Cliente, método de pago, producto, venta o envío inexistente o inactivo."""
    code = "reference_error"
    http_status = 404


class StockError(ServiceError):
    """``errors``: [{"producto_id", "producto", "solicitado", "disponible"}, ...]"""
    code = "stock_error"
    http_status = 409


class StateError(ServiceError):
    code = "state_error"
    http_status = 409


class EmptySelectionError(ServiceError):
    code = "empty_selection"
    http_status = 400


class PersistenceError(ServiceError):
    code = "persistence_error"
    http_status = 500


class UniquenessError(PersistenceError):
    """Colisión de número de venta tras agotar los reintentos del generador."""
    code = "uniqueness_error"


def ensure(cond, msg: str, exc=ValidationError, errors: Optional[List[Any]] = None):
    if not cond:
        raise exc(msg, errors)
