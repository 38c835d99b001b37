# app/core/forms.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import Form, StringField, IntegerField, TextAreaField, DateField
from wtforms.fields.core import Field
from wtforms.validators import (
    InputRequired, Optional as Opt, Length, NumberRange, AnyOf
)

from app.core import lifecycle
from app.core.errors import ValidationError
from app.core.services import LineaVentaDTO
from app.core.shipments import DELIVERY_STATUSES, REAL_PAYMENT_STATUSES


# =============================================================================
# Utilidades
# =============================================================================

def _q2(v: Decimal) -> Decimal:
    return v.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

def parse_decimal(text) -> Optional[Decimal]:
    """
    Convierte a Decimal aceptando coma o punto ("1.234,50" / "1234.50" / 1234.5).
    Vacío devuelve None.
    """
    if text is None:
        return None
    s = str(text).strip()
    if s == "":
        return None
    s = s.replace(".", "").replace(",", ".") if s.count(",") == 1 and s.count(".") > 0 else s.replace(",", ".")
    try:
        d = Decimal(s)
        # NaN / Infinity no son montos
        if not d.is_finite():
            raise InvalidOperation(s)
        return _q2(d)
    except InvalidOperation:
        raise ValueError("Valor numérico inválido")

def json_formdata(payload: Optional[Dict[str, Any]]) -> MultiDict:
    """JSON -> MultiDict: listas de escalares como claves repetidas, None se omite."""
    pares: List[Tuple[str, str]] = []
    for k, v in (payload or {}).items():
        if v is None or isinstance(v, dict):
            continue
        if isinstance(v, (list, tuple)):
            pares.extend((k, str(x)) for x in v if x is not None and not isinstance(x, (dict, list)))
        elif isinstance(v, bool):
            pares.append((k, "1" if v else "0"))
        else:
            pares.append((k, str(v)))
    return MultiDict(pares)

def form_errors(form, prefix: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    out = []
    for campo, mensajes in form.errors.items():
        for m in mensajes:
            err = dict(prefix or {})
            err.update({"campo": campo, "motivo": m})
            out.append(err)
    return out

def validate_or_raise(form, message: str = "Datos inválidos") -> None:
    if not form.validate():
        raise ValidationError(message, form_errors(form))


# =============================================================================
# Campos customizados
# =============================================================================

class DecimalMoneyField(Field):
    """
    Entrada textual o numérica que se convierte en Decimal con 2 decimales.
    """
    def __init__(self, label=None, validators=None, **kwargs):
        super().__init__(label, validators, **kwargs)
        self.data = None

    def _value(self):
        return str(self.data) if isinstance(self.data, Decimal) else (self.data or "")

    def process_formdata(self, valuelist):
        if valuelist:
            self.data = parse_decimal(valuelist[0])

class IntegerListField(Field):
    """Lista de ids enteros (claves repetidas en el formdata)."""
    def __init__(self, label=None, validators=None, **kwargs):
        super().__init__(label, validators, **kwargs)
        self.data = []

    def _value(self):
        return ",".join(str(i) for i in self.data or [])

    def process_formdata(self, valuelist):
        ids = []
        for raw in valuelist:
            try:
                ids.append(int(str(raw).strip()))
            except ValueError:
                raise ValueError(f"Id inválido: {raw}")
        self.data = ids


# =============================================================================
# Ventas
# =============================================================================

class SaleLineForm(Form):
    producto_id = IntegerField("Producto", validators=[InputRequired()])
    cantidad = IntegerField("Cantidad", validators=[InputRequired(), NumberRange(min=1, message="La cantidad debe ser al menos 1")])
    precio_unitario = DecimalMoneyField("Precio unitario", validators=[Opt()])
    descuento_porcentaje = DecimalMoneyField("Descuento %", validators=[Opt()])

    def validate_precio_unitario(self, field):
        if field.data is not None and field.data < 0:
            raise ValueError("El precio no puede ser negativo")

    def validate_descuento_porcentaje(self, field):
        if field.data is not None and not (Decimal("0") <= field.data <= Decimal("100")):
            raise ValueError("El descuento debe estar entre 0 y 100")

    def to_dto(self) -> LineaVentaDTO:
        return LineaVentaDTO(
            producto_id=self.producto_id.data,
            cantidad=self.cantidad.data,
            precio_unitario=self.precio_unitario.data,
            descuento_porcentaje=self.descuento_porcentaje.data or Decimal("0"),
        )

def parse_lineas(raw, requerido: bool = True) -> Optional[List[LineaVentaDTO]]:
    """Valida cada línea y reporta los errores de todas juntas."""
    if raw is None and not requerido:
        return None
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Debe agregar al menos un producto a la venta",
                              [{"campo": "items", "motivo": "obligatorio"}])
    dtos, errores = [], []
    for idx, linea in enumerate(raw):
        if not isinstance(linea, dict):
            errores.append({"linea": idx, "campo": "items", "motivo": "formato inválido"})
            continue
        form = SaleLineForm(formdata=json_formdata(linea))
        if form.validate():
            dtos.append(form.to_dto())
        else:
            errores.extend(form_errors(form, {"linea": idx}))
    if errores:
        raise ValidationError("Líneas de venta inválidas", errores)
    return dtos

class SaleForm(FlaskForm):
    cliente_id = IntegerField("Cliente", validators=[InputRequired(message="El cliente es obligatorio")])
    metodo_pago_id = IntegerField("Método de pago", validators=[InputRequired(message="El método de pago es obligatorio")])
    referencia_pago = StringField("Referencia de pago", validators=[Opt(), Length(max=100)])
    costo_envio = DecimalMoneyField("Costo de envío", validators=[Opt()])
    observaciones = TextAreaField("Observaciones", validators=[Opt()])

    def validate_costo_envio(self, field):
        if field.data is not None and field.data < 0:
            raise ValueError("El costo de envío no puede ser negativo")

class SaleEditForm(SaleForm):
    cliente_id = IntegerField("Cliente", validators=[Opt()])
    metodo_pago_id = IntegerField("Método de pago", validators=[Opt()])

    def campos(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        # sólo los campos presentes en el payload
        out = {}
        for nombre in ("cliente_id", "metodo_pago_id", "referencia_pago", "costo_envio", "observaciones"):
            if nombre in payload:
                out[nombre] = getattr(self, nombre).data if payload[nombre] is not None else None
        return out

class SaleStatusForm(FlaskForm):
    estado_venta = StringField("Estado de venta", validators=[Opt(), AnyOf(lifecycle.SALE_STATUSES)])
    estado_pago = StringField("Estado de pago", validators=[Opt(), AnyOf(lifecycle.PAYMENT_STATUSES)])

class ItemUpdateForm(FlaskForm):
    cantidad = IntegerField("Cantidad", validators=[Opt(), NumberRange(min=1, message="La cantidad debe ser al menos 1")])
    precio_unitario = DecimalMoneyField("Precio unitario", validators=[Opt()])
    descuento_porcentaje = DecimalMoneyField("Descuento %", validators=[Opt()])

    validate_precio_unitario = SaleLineForm.validate_precio_unitario
    validate_descuento_porcentaje = SaleLineForm.validate_descuento_porcentaje

class ProductIdsForm(FlaskForm):
    product_ids = IntegerListField("Productos")

class StockQueryForm(FlaskForm):
    cantidad = IntegerField("Cantidad", default=1,
                            validators=[Opt(), NumberRange(min=1, message="La cantidad debe ser al menos 1")])


# =============================================================================
# Listados (query string)
# =============================================================================

class PageForm(FlaskForm):
    page = IntegerField("Página", default=1, validators=[Opt(), NumberRange(min=1)])
    limit = IntegerField("Límite", default=10, validators=[Opt(), NumberRange(min=1, max=200)])

class SaleFilterForm(PageForm):
    limit = IntegerField("Límite", default=50, validators=[Opt(), NumberRange(min=1, max=200)])
    cliente_id = IntegerField("Cliente", validators=[Opt()])
    usuario_id = IntegerField("Operador", validators=[Opt()])
    metodo_pago_id = IntegerField("Método de pago", validators=[Opt()])
    estado_venta = StringField("Estado de venta", validators=[Opt(), AnyOf(lifecycle.SALE_STATUSES)])
    estado_pago = StringField("Estado de pago", validators=[Opt(), AnyOf(lifecycle.PAYMENT_STATUSES)])
    fecha_desde = DateField("Desde", format="%Y-%m-%d", validators=[Opt()])
    fecha_hasta = DateField("Hasta", format="%Y-%m-%d", validators=[Opt()])
    search = StringField("Número de venta", validators=[Opt(), Length(max=50)])

    def validate_fecha_hasta(self, field):
        if field.data and self.fecha_desde.data and field.data < self.fecha_desde.data:
            raise ValueError("La fecha hasta no puede ser anterior a la fecha desde")

    def filtros(self) -> Dict[str, Any]:
        return {k: v for k, v in self.data.items() if k != "csrf_token" and v not in (None, "")}


# =============================================================================
# Envíos
# =============================================================================

class BatchGenerateForm(FlaskForm):
    venta_ids = IntegerListField("Ventas")
    fecha = DateField("Fecha", format="%Y-%m-%d", validators=[Opt()])

class ShipmentStatusForm(FlaskForm):
    estado_entrega = StringField("Estado de entrega", validators=[Opt(), AnyOf(DELIVERY_STATUSES)])
    estado_pago_real = StringField("Pago real", validators=[Opt(), AnyOf(REAL_PAYMENT_STATUSES)])
    observaciones = TextAreaField("Observaciones del distribuidor", validators=[Opt(), Length(max=2000)])

class BatchUpdateItemForm(Form):
    shipment_id = IntegerField("Envío", validators=[InputRequired()])
    estado_entrega = StringField("Estado de entrega", validators=[Opt(), AnyOf(DELIVERY_STATUSES)])
    estado_pago_real = StringField("Pago real", validators=[Opt(), AnyOf(REAL_PAYMENT_STATUSES)])
    observaciones = TextAreaField("Observaciones del distribuidor", validators=[Opt(), Length(max=2000)])

def parse_batch_updates(raw) -> List[Dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Debe indicar al menos una actualización",
                              [{"campo": "updates", "motivo": "obligatorio"}])
    updates, errores = [], []
    for idx, upd in enumerate(raw):
        form = BatchUpdateItemForm(formdata=json_formdata(upd if isinstance(upd, dict) else {}))
        if form.validate():
            updates.append({k: v for k, v in form.data.items() if v not in (None, "")})
        else:
            errores.extend(form_errors(form, {"indice": idx}))
    if errores:
        raise ValidationError("Actualizaciones inválidas", errores)
    return updates
