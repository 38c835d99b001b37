# app/core/services.py
from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from app.extensions import db
from app.core import lifecycle
from app.core.errors import (
    ServiceError, ValidationError, InvalidReferenceError, StockError,
    UniquenessError, PersistenceError, ensure,
)
from app.core.models import (
    _as_money,
    User, Customer, PaymentMethod, Product,
    Sale, SaleItem, SequenceCounter, StockMove, AuditLog,
)
from app.core.pricing import (
    LineAmounts, compute_line_subtotal, compute_sale_total, apply_line, apply_totals,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Unidad de trabajo y utilidades
# =============================================================================

def _now() -> datetime:
    return datetime.now()

def _row_to_dict(obj, keys: Iterable[str]) -> Dict[str, Any]:
    out = {}
    for k in keys:
        v = getattr(obj, k, None)
        out[k] = str(v) if isinstance(v, Decimal) else v
    return out

@contextmanager
def transaction():
    """
    Todo-o-nada: commit al salir sin error, rollback completo ante cualquier falla.
    Los errores del dominio se propagan tal cual; los de almacenamiento se
    convierten en PersistenceError con mensaje genérico.
    """
    try:
        yield
        db.session.commit()
    except ServiceError:
        db.session.rollback()
        raise
    except IntegrityError as ie:
        db.session.rollback()
        logger.error("Violación de integridad: %s", ie.orig)
        raise PersistenceError("No se pudo guardar la operación (violación de integridad)") from ie
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("Error de base de datos")
        raise PersistenceError("No se pudo guardar la operación") from e
    except Exception as e:
        db.session.rollback()
        logger.exception("Error inesperado en la unidad de trabajo")
        raise PersistenceError("Error interno al procesar la operación") from e

def audit_log(entidade: str, entidade_id: Optional[int], acao: str, payload: dict, user: Optional[User]):
    log = AuditLog(
        entidade=entidade,
        entidade_id=entidade_id,
        acao=acao,
        payload_json=payload or {},
        user_id=user.id if user else None,
    )
    db.session.add(log)


# =============================================================================
# Contadores serializados
# =============================================================================

def _insert_ignore(values: Dict[str, Any]):
    table = SequenceCounter.__table__
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=[table.c.clave])
    if dialect == "sqlite":
        return sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=[table.c.clave])
    if dialect in ("mysql", "mariadb"):
        return insert(table).values(**values).prefix_with("IGNORE")
    return insert(table).values(**values)

def next_sequence(clave: str, seed: Optional[Callable[[], int]] = None) -> int:
    """
    Incremento atómico del contador ``clave``. El UPDATE toma el lock de la
    fila (o el de escritura en SQLite) hasta el fin de la transacción, así que
    dos unidades de trabajo nunca obtienen el mismo valor.
    ``seed`` da el valor inicial cuando el contador aún no existe.
    """
    table = SequenceCounter.__table__
    incremento = update(table).where(table.c.clave == clave).values(ultimo=table.c.ultimo + 1)
    if db.session.execute(incremento).rowcount == 0:
        inicial = seed() if seed else 0
        db.session.execute(_insert_ignore({"clave": clave, "ultimo": inicial}))
        db.session.execute(incremento)
    return db.session.execute(select(table.c.ultimo).where(table.c.clave == clave)).scalar_one()


# =============================================================================
# Numeración de ventas
# =============================================================================

SALE_NUMBER_PREFIX = "VTA"

def _sale_prefix(ahora: datetime) -> str:
    return f"{SALE_NUMBER_PREFIX}-{ahora:%m%Y}-"

def _max_numero_mes(prefijo: str) -> int:
    numeros = db.session.execute(
        select(Sale.numero_venta).where(Sale.numero_venta.like(f"{prefijo}%"))
    ).scalars()
    mayor = 0
    for numero in numeros:
        sufijo = numero.rsplit("-", 1)[-1]
        if sufijo.isdigit():
            mayor = max(mayor, int(sufijo))
    return mayor

def next_sale_number(ahora: Optional[datetime] = None) -> str:
    """
    Próximo ``VTA-MMYYYY-NNNNNN`` del mes. El contador mensual se siembra con
    el mayor número ya emitido ese mes; si el número resultante ya existe se
    reintenta con el siguiente, hasta SALE_NUMBER_MAX_RETRIES.
    """
    ahora = ahora or _now()
    prefijo = _sale_prefix(ahora)
    intentos = int(current_app.config.get("SALE_NUMBER_MAX_RETRIES", 5))
    for _ in range(max(intentos, 1)):
        n = next_sequence(f"venta:{ahora:%Y%m}", seed=lambda: _max_numero_mes(prefijo))
        numero = f"{prefijo}{n:06d}"
        existe = db.session.execute(select(Sale.id).where(Sale.numero_venta == numero)).first()
        if existe is None:
            return numero
        logger.warning("Número de venta %s ya existe; reintentando", numero)
    raise UniquenessError("No se pudo asignar un número de venta único")


# =============================================================================
# Libro de stock
# =============================================================================

def _expire_stock(product_id: int) -> None:
    obj = db.session.identity_map.get(db.session.identity_key(Product, product_id))
    if obj is not None:
        db.session.expire(obj, ["stock"])

def reservar_stock(product_id: int, qtd: int, venta: Optional[Sale] = None, user: Optional[User] = None) -> StockMove:
    """
    Descuenta ``qtd`` con compare-and-swap (``stock >= qtd`` en el WHERE).
    Ninguna fila afectada => StockError; el stock nunca queda negativo.
    """
    qtd = int(qtd)
    ensure(qtd > 0, "La cantidad a reservar debe ser positiva")
    res = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= qtd)
        .values(stock=Product.stock - qtd)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        prod = db.session.get(Product, product_id, populate_existing=True)
        ensure(prod is not None, f"Producto {product_id} no encontrado", InvalidReferenceError,
               [{"producto_id": product_id, "motivo": "no_encontrado"}])
        raise StockError(
            f"Stock insuficiente para {prod.fragancia}. Disponible: {prod.stock}",
            [{"producto_id": prod.id, "producto": prod.fragancia, "solicitado": qtd, "disponible": prod.stock}],
        )
    _expire_stock(product_id)
    sm = StockMove(
        product_id=product_id,
        tipo="reserva_venta",
        qtd=qtd,
        ref_origem="sale",
        ref_id=venta.id if venta else None,
        motivo=f"Venta {venta.numero_venta}" if venta else None,
        created_by_id=user.id if user else None,
    )
    db.session.add(sm)
    return sm

def liberar_stock(product_id: int, qtd: int, venta: Optional[Sale] = None, user: Optional[User] = None,
                  motivo: Optional[str] = None) -> StockMove:
    qtd = int(qtd)
    ensure(qtd > 0, "La cantidad a liberar debe ser positiva")
    res = db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + qtd)
        .execution_options(synchronize_session=False)
    )
    ensure(res.rowcount == 1, f"Producto {product_id} no encontrado; no se pudo restaurar stock",
           InvalidReferenceError, [{"producto_id": product_id, "motivo": "no_encontrado"}])
    _expire_stock(product_id)
    sm = StockMove(
        product_id=product_id,
        tipo="liberacion_venta",
        qtd=qtd,
        ref_origem="sale",
        ref_id=venta.id if venta else None,
        motivo=(motivo or (f"Venta {venta.numero_venta}" if venta else None)),
        created_by_id=user.id if user else None,
    )
    db.session.add(sm)
    return sm


# =============================================================================
# Validaciones de referencias
# =============================================================================

@dataclass
class LineaVentaDTO:
    producto_id: int
    cantidad: int
    precio_unitario: Optional[Decimal] = None
    descuento_porcentaje: Decimal = Decimal("0")

def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return int(d) if d == d.to_integral_value() else None

def _as_decimal(value) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None

def _validar_lineas(lineas: List[LineaVentaDTO]) -> None:
    ensure(lineas, "Debe agregar al menos un producto a la venta")
    errores = []
    for idx, ln in enumerate(lineas):
        if _as_int(ln.producto_id) is None:
            errores.append({"linea": idx, "campo": "producto_id", "motivo": "obligatorio"})
        cant = _as_int(ln.cantidad)
        if cant is None or cant < 1:
            errores.append({"linea": idx, "campo": "cantidad", "motivo": "debe ser un entero >= 1"})
        if ln.precio_unitario is not None:
            precio = _as_decimal(ln.precio_unitario)
            if precio is None or precio < 0:
                errores.append({"linea": idx, "campo": "precio_unitario", "motivo": "no puede ser negativo"})
        pct = _as_decimal(ln.descuento_porcentaje if ln.descuento_porcentaje is not None else 0)
        if pct is None or pct < 0 or pct > 100:
            errores.append({"linea": idx, "campo": "descuento_porcentaje", "motivo": "debe estar entre 0 y 100"})
    ensure(not errores, "Líneas de venta inválidas", ValidationError, errores)

def _validar_cliente(cliente_id) -> Customer:
    ensure(cliente_id, "El cliente es obligatorio")
    cliente = db.session.get(Customer, cliente_id)
    ensure(cliente is not None and cliente.activo, "Cliente no encontrado o inactivo", InvalidReferenceError,
           [{"cliente_id": cliente_id}])
    return cliente

def _validar_metodo_pago(metodo_pago_id, referencia_pago: Optional[str]) -> PaymentMethod:
    ensure(metodo_pago_id, "El método de pago es obligatorio")
    mp = db.session.get(PaymentMethod, metodo_pago_id)
    ensure(mp is not None and mp.activo, "Método de pago no encontrado o inactivo", InvalidReferenceError,
           [{"metodo_pago_id": metodo_pago_id}])
    ensure(not mp.requiere_referencia or (referencia_pago or "").strip(),
           f"El método de pago {mp.nombre} requiere una referencia", ValidationError,
           [{"campo": "referencia_pago", "motivo": "obligatorio"}])
    ensure(len(referencia_pago or "") <= 100, "La referencia de pago debe tener máximo 100 caracteres")
    return mp

def _validar_costo_envio(costo_envio) -> Decimal:
    envio = _as_decimal(costo_envio if costo_envio is not None else 0)
    ensure(envio is not None and envio >= 0, "El costo de envío no puede ser negativo")
    return _as_money(envio)

def _cargar_productos(ids: Iterable[int], exigir_activos: bool = True) -> Dict[int, Product]:
    """
    Carga (con lock de fila donde el motor lo soporte) y reporta todos los
    productos faltantes o inactivos juntos.
    """
    unicos = sorted({int(i) for i in ids})
    if not unicos:
        return {}
    productos = db.session.execute(
        select(Product).where(Product.id.in_(unicos)).order_by(Product.id).with_for_update()
    ).scalars().all()
    por_id = {p.id: p for p in productos}
    invalidos = []
    for pid in unicos:
        p = por_id.get(pid)
        if p is None:
            invalidos.append({"producto_id": pid, "motivo": "no_encontrado"})
        elif exigir_activos and not p.activo:
            invalidos.append({"producto_id": pid, "producto": p.fragancia, "motivo": "inactivo"})
    if invalidos:
        ids_txt = ", ".join(str(i["producto_id"]) for i in invalidos)
        raise InvalidReferenceError(f"Los siguientes productos no están disponibles: {ids_txt}", invalidos)
    return por_id

def _verificar_stock(requeridos: Dict[int, int], productos: Dict[int, Product]) -> None:
    faltantes = []
    for pid, qtd in sorted(requeridos.items()):
        if qtd <= 0:
            continue
        p = productos[pid]
        if p.stock < qtd:
            faltantes.append({"producto_id": pid, "producto": p.fragancia, "solicitado": qtd, "disponible": p.stock})
    if faltantes:
        raise StockError("Stock insuficiente para algunos productos", faltantes)

def _preparar_lineas(lineas: List[LineaVentaDTO]) -> Tuple[List[Tuple[Product, LineAmounts]], Dict[int, Product]]:
    _validar_lineas(lineas)
    productos = _cargar_productos(ln.producto_id for ln in lineas)
    preparadas = []
    for ln in lineas:
        p = productos[int(ln.producto_id)]
        precio = ln.precio_unitario if ln.precio_unitario is not None else p.precio_venta
        preparadas.append((p, compute_line_subtotal(precio, ln.descuento_porcentaje, _as_int(ln.cantidad))))
    return preparadas, productos

def _cantidades(pares: Iterable[Tuple[int, int]]) -> Dict[int, int]:
    out: Dict[int, int] = defaultdict(int)
    for pid, qtd in pares:
        out[pid] += int(qtd)
    return dict(out)

def _nuevo_item(producto: Product, amounts: LineAmounts) -> SaleItem:
    item = SaleItem(producto_id=producto.id)
    item.producto = producto
    apply_line(item, amounts)
    return item

def _recalcular_totales(sale: Sale) -> None:
    apply_totals(sale, compute_sale_total(sale.items, sale.costo_envio))


# =============================================================================
# Lectura
# =============================================================================

def _venta_para_actualizar(sale_id: int) -> Sale:
    sale = db.session.execute(
        select(Sale).where(Sale.id == sale_id).with_for_update()
    ).scalar_one_or_none()
    ensure(sale is not None, f"Venta {sale_id} no encontrada", InvalidReferenceError, [{"venta_id": sale_id}])
    return sale

def obtener_venta(sale_id: int) -> Sale:
    """Única vía de lectura: cabecera, líneas con producto y referencias."""
    sale = db.session.execute(
        select(Sale)
        .where(Sale.id == sale_id)
        .options(
            selectinload(Sale.items).selectinload(SaleItem.producto),
            selectinload(Sale.cliente),
            selectinload(Sale.metodo_pago),
            selectinload(Sale.usuario),
            selectinload(Sale.envios),
        )
    ).scalar_one_or_none()
    ensure(sale is not None, f"Venta {sale_id} no encontrada", InvalidReferenceError, [{"venta_id": sale_id}])
    return sale

def validar_productos(product_ids: List[int]) -> Dict[str, Any]:
    ids = [i for i in (_as_int(x) for x in product_ids or []) if i is not None]
    productos = db.session.execute(
        select(Product).where(Product.id.in_(ids), Product.activo.is_(True))
    ).scalars().all() if ids else []
    encontrados = {p.id for p in productos}
    invalidos = [i for i in ids if i not in encontrados]
    return {
        "valid_products": [
            {"id": p.id, "fragancia": p.fragancia, "stock": p.stock, "precio_venta": str(p.precio_venta)}
            for p in productos
        ],
        "invalid_product_ids": invalidos,
        "all_valid": not invalidos,
    }

def item_to_dict(item: SaleItem) -> Dict[str, Any]:
    d = _row_to_dict(item, [
        "id", "venta_id", "producto_id", "cantidad", "precio_unitario", "descuento_porcentaje",
        "descuento_monto", "precio_con_descuento", "subtotal",
    ])
    d["producto"] = item.producto.fragancia if item.producto else None
    return d

def sale_to_dict(sale: Sale) -> Dict[str, Any]:
    d = _row_to_dict(sale, [
        "id", "numero_venta", "cliente_id", "usuario_id", "metodo_pago_id", "referencia_pago",
        "subtotal", "descuento_total", "costo_envio", "total", "estado_venta", "estado_pago",
        "observaciones",
    ])
    d["fecha"] = sale.fecha.isoformat() if sale.fecha else None
    d["cliente"] = {"id": sale.cliente.id, "nombre": sale.cliente.nombre_completo} if sale.cliente else None
    d["metodo_pago"] = {"id": sale.metodo_pago.id, "nombre": sale.metodo_pago.nombre} if sale.metodo_pago else None
    d["items"] = [item_to_dict(i) for i in sale.items]
    d["can_edit"] = lifecycle.can_edit(sale)
    d["is_completed"] = lifecycle.is_completed(sale)
    return d

def verificar_stock_producto(product_id: int, cantidad: int = 1) -> Dict[str, Any]:
    """Disponibilidad de un producto para una cantidad pedida (no reserva nada)."""
    ensure(cantidad is not None and cantidad >= 1, "La cantidad debe ser al menos 1",
           errors=[{"campo": "cantidad", "motivo": "mínimo 1"}])
    producto = db.session.get(Product, product_id)
    ensure(producto is not None, f"Producto {product_id} no encontrado", InvalidReferenceError,
           [{"producto_id": product_id}])
    return {
        "producto": {"id": producto.id, "fragancia": producto.fragancia},
        "stock_disponible": producto.stock,
        "cantidad_solicitada": cantidad,
        "disponible": bool(producto.activo) and producto.stock >= cantidad,
        "precio": str(producto.precio_venta),
        "activo": bool(producto.activo),
    }

def _paginar(q, page: int, limit: int) -> Dict[str, Any]:
    pag = db.paginate(q, page=page, per_page=limit, error_out=False, count=True)
    return {
        "data": [sale_to_dict(s) for s in pag.items],
        "pagination": {
            "total": pag.total,
            "page": page,
            "limit": limit,
            "totalPages": pag.pages,
        },
    }

def _listado_base():
    return select(Sale).options(
        selectinload(Sale.items).selectinload(SaleItem.producto),
        selectinload(Sale.cliente),
        selectinload(Sale.metodo_pago),
    )

def listar_ventas(
    cliente_id: Optional[int] = None,
    usuario_id: Optional[int] = None,
    estado_venta: Optional[str] = None,
    estado_pago: Optional[str] = None,
    metodo_pago_id: Optional[int] = None,
    fecha_desde: Optional[date] = None,
    fecha_hasta: Optional[date] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    """
    Listado filtrado y paginado, más reciente primero.

    ``fecha_hasta`` incluye el día completo. ``search`` busca por número de venta.
    """
    q = _listado_base()
    if cliente_id is not None:
        q = q.where(Sale.cliente_id == cliente_id)
    if usuario_id is not None:
        q = q.where(Sale.usuario_id == usuario_id)
    if estado_venta:
        q = q.where(Sale.estado_venta == estado_venta)
    if estado_pago:
        q = q.where(Sale.estado_pago == estado_pago)
    if metodo_pago_id is not None:
        q = q.where(Sale.metodo_pago_id == metodo_pago_id)
    if fecha_desde is not None:
        q = q.where(Sale.fecha >= datetime.combine(fecha_desde, time.min))
    if fecha_hasta is not None:
        q = q.where(Sale.fecha < datetime.combine(fecha_hasta + timedelta(days=1), time.min))
    if search:
        q = q.where(Sale.numero_venta.ilike(f"%{search.strip()}%"))
    q = q.order_by(Sale.fecha.desc(), Sale.numero_venta.desc())
    return _paginar(q, page, limit)

def ventas_por_cliente(cliente_id: int, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    ensure(db.session.get(Customer, cliente_id) is not None, f"Cliente {cliente_id} no encontrado",
           InvalidReferenceError, [{"cliente_id": cliente_id}])
    q = _listado_base().where(Sale.cliente_id == cliente_id).order_by(Sale.fecha.desc(), Sale.id.desc())
    return _paginar(q, page, limit)


# =============================================================================
# Ventas: alta
# =============================================================================

def crear_venta(
    cliente_id: int,
    metodo_pago_id: int,
    lineas: List[LineaVentaDTO],
    operador: User,
    referencia_pago: Optional[str] = None,
    costo_envio: Decimal = Decimal("0"),
    observaciones: Optional[str] = None,
) -> Sale:
    """
    Alta de venta. Todas las validaciones (referencias, productos, stock)
    ocurren antes de escribir y reportan todas las causas juntas. Luego se
    numera, se persiste cabecera + líneas y se reserva stock por línea.
    Debe ejecutarse dentro de ``transaction()``.
    """
    ensure(operador is not None, "El operador es obligatorio")
    envio = _validar_costo_envio(costo_envio)
    _validar_cliente(cliente_id)
    _validar_metodo_pago(metodo_pago_id, referencia_pago)
    preparadas, productos = _preparar_lineas(lineas)
    _verificar_stock(_cantidades((p.id, a.cantidad) for p, a in preparadas), productos)

    ahora = _now()
    sale = Sale(
        numero_venta=next_sale_number(ahora),
        fecha=ahora,
        cliente_id=cliente_id,
        usuario_id=operador.id,
        metodo_pago_id=metodo_pago_id,
        referencia_pago=(referencia_pago or "").strip() or None,
        costo_envio=envio,
        estado_venta=lifecycle.EN_PROCESO,
        estado_pago=lifecycle.PENDIENTE,
        observaciones=observaciones,
        created_by_id=operador.id,
    )
    for producto, amounts in preparadas:
        sale.items.append(_nuevo_item(producto, amounts))
    apply_totals(sale, compute_sale_total([a for _, a in preparadas], envio))
    db.session.add(sale)
    db.session.flush()

    for item in sale.items:
        reservar_stock(item.producto_id, item.cantidad, sale, operador)

    audit_log("Sale", sale.id, "created", {
        "numero_venta": sale.numero_venta, "items": len(sale.items), "total": str(sale.total),
    }, operador)
    logger.info("Venta creada: %s (%d items, total %s)", sale.numero_venta, len(sale.items), sale.total)
    return sale


# =============================================================================
# Ventas: edición, corrección y baja
# =============================================================================

CAMPOS_EDITABLES = {"cliente_id", "metodo_pago_id", "referencia_pago", "costo_envio", "observaciones"}

def _aplicar_campos(sale: Sale, campos: Dict[str, Any]) -> None:
    desconocidos = sorted(set(campos) - CAMPOS_EDITABLES)
    ensure(not desconocidos, "Campos no editables", ValidationError,
           [{"campo": c, "motivo": "no_editable"} for c in desconocidos])
    if "cliente_id" in campos:
        sale.cliente_id = _validar_cliente(campos["cliente_id"]).id
    if "referencia_pago" in campos:
        sale.referencia_pago = (campos["referencia_pago"] or "").strip() or None
    if "metodo_pago_id" in campos or "referencia_pago" in campos:
        mp_id = campos.get("metodo_pago_id", sale.metodo_pago_id)
        sale.metodo_pago_id = _validar_metodo_pago(mp_id, sale.referencia_pago).id
    if "costo_envio" in campos:
        sale.costo_envio = _validar_costo_envio(campos["costo_envio"])
    if "observaciones" in campos:
        sale.observaciones = campos["observaciones"]

def _sustituir_items(sale: Sale, preparadas: List[Tuple[Product, LineAmounts]]) -> None:
    sale.items.clear()
    for producto, amounts in preparadas:
        sale.items.append(_nuevo_item(producto, amounts))

def editar_venta(
    sale_id: int,
    campos: Optional[Dict[str, Any]] = None,
    lineas: Optional[List[LineaVentaDTO]] = None,
    operador: Optional[User] = None,
) -> Sale:
    """
    Edición con seguimiento de stock.

    Si llegan ``lineas`` reemplazan a las actuales y el stock se ajusta por la
    diferencia por producto (nuevo − anterior): se reservan los aumentos, con
    verificación previa que reporta todos los faltantes, y se liberan las
    disminuciones. Totales recalculados siempre.
    """
    sale = _venta_para_actualizar(sale_id)
    lifecycle.ensure_editable(sale)
    antes = _row_to_dict(sale, ["cliente_id", "metodo_pago_id", "costo_envio", "total"])
    _aplicar_campos(sale, campos or {})

    if lineas is not None:
        preparadas, productos = _preparar_lineas(lineas)
        anterior = _cantidades((i.producto_id, i.cantidad) for i in sale.items)
        nuevo = _cantidades((p.id, a.cantidad) for p, a in preparadas)
        deltas = {pid: nuevo.get(pid, 0) - anterior.get(pid, 0) for pid in set(anterior) | set(nuevo)}
        _verificar_stock({pid: d for pid, d in deltas.items() if d > 0}, productos)
        _sustituir_items(sale, preparadas)
        for pid, d in sorted(deltas.items()):
            if d > 0:
                reservar_stock(pid, d, sale, operador)
            elif d < 0:
                liberar_stock(pid, -d, sale, operador, motivo=f"Edición de venta {sale.numero_venta}")

    _recalcular_totales(sale)
    sale.updated_by_id = operador.id if operador else None
    audit_log("Sale", sale.id, "updated", {
        "before": antes, "after": _row_to_dict(sale, ["cliente_id", "metodo_pago_id", "costo_envio", "total"]),
        "lineas": lineas is not None,
    }, operador)
    logger.info("Venta actualizada: %s", sale.numero_venta)
    return sale

def corregir_venta(
    sale_id: int,
    campos: Optional[Dict[str, Any]] = None,
    lineas: Optional[List[LineaVentaDTO]] = None,
    operador: Optional[User] = None,
) -> Sale:
    """
    Corrección administrativa: mismas validaciones y recálculo de totales que
    ``editar_venta`` pero el stock NO se verifica ni se modifica.

    Pensada para corregir datos cuyo stock ya fue conciliado fuera de banda.
    Si las cantidades por producto cambian, el stock registrado deja de
    reflejar las líneas; se deja constancia en log y auditoría.
    """
    sale = _venta_para_actualizar(sale_id)
    lifecycle.ensure_editable(sale)
    _aplicar_campos(sale, campos or {})

    divergencias = []
    if lineas is not None:
        preparadas, _ = _preparar_lineas(lineas)
        anterior = _cantidades((i.producto_id, i.cantidad) for i in sale.items)
        nuevo = _cantidades((p.id, a.cantidad) for p, a in preparadas)
        divergencias = [
            {"producto_id": pid, "anterior": anterior.get(pid, 0), "nuevo": nuevo.get(pid, 0)}
            for pid in sorted(set(anterior) | set(nuevo))
            if anterior.get(pid, 0) != nuevo.get(pid, 0)
        ]
        _sustituir_items(sale, preparadas)

    _recalcular_totales(sale)
    sale.updated_by_id = operador.id if operador else None
    if divergencias:
        logger.warning(
            "Corrección de venta %s cambia cantidades sin mover stock: %s",
            sale.numero_venta, divergencias,
        )
    audit_log("Sale", sale.id, "revised", {"total": str(sale.total), "divergencias_stock": divergencias}, operador)
    return sale

def eliminar_venta(sale_id: int, operador: Optional[User] = None) -> str:
    """
    Restaura el stock de cada línea y luego elimina la venta con sus líneas y
    envíos. Si alguna restauración falla, la baja falla entera.
    """
    sale = _venta_para_actualizar(sale_id)
    numero = sale.numero_venta
    for item in list(sale.items):
        liberar_stock(item.producto_id, item.cantidad, sale, operador, motivo=f"Baja de venta {numero}")
    audit_log("Sale", sale.id, "deleted", {
        "numero_venta": numero,
        "items": [{"producto_id": i.producto_id, "cantidad": i.cantidad} for i in sale.items],
    }, operador)
    db.session.delete(sale)
    db.session.flush()
    logger.info("Venta eliminada: %s", numero)
    return numero

def cambiar_estado_venta(
    sale_id: int,
    estado_venta: Optional[str] = None,
    estado_pago: Optional[str] = None,
    operador: Optional[User] = None,
) -> Sale:
    ensure(estado_venta is not None or estado_pago is not None, "Debe indicar estado_venta o estado_pago")
    sale = _venta_para_actualizar(sale_id)
    antes = lifecycle.status_info(sale)
    if lifecycle.apply_transition(sale, estado_venta, estado_pago):
        sale.updated_by_id = operador.id if operador else None
        audit_log("Sale", sale.id, "status_changed", {"before": antes, "after": lifecycle.status_info(sale)}, operador)
        logger.info("Estado actualizado: %s -> %s/%s", sale.numero_venta, sale.estado_venta, sale.estado_pago)
    return sale


# =============================================================================
# Ventas: líneas individuales
# =============================================================================

def agregar_item(sale_id: int, linea: LineaVentaDTO, operador: Optional[User] = None) -> SaleItem:
    sale = _venta_para_actualizar(sale_id)
    lifecycle.ensure_editable(sale)
    preparadas, productos = _preparar_lineas([linea])
    producto, amounts = preparadas[0]
    ensure(all(i.producto_id != producto.id for i in sale.items),
           "El producto ya está en esta venta. Use la actualización de la línea.")
    _verificar_stock({producto.id: amounts.cantidad}, productos)

    item = _nuevo_item(producto, amounts)
    sale.items.append(item)
    db.session.flush()
    reservar_stock(producto.id, amounts.cantidad, sale, operador)
    _recalcular_totales(sale)
    audit_log("Sale", sale.id, "item_added", {"producto_id": producto.id, "cantidad": amounts.cantidad}, operador)
    return item

def _item_para_actualizar(item_id: int) -> Tuple[SaleItem, Sale]:
    item = db.session.get(SaleItem, item_id)
    ensure(item is not None, f"Item {item_id} no encontrado", InvalidReferenceError, [{"item_id": item_id}])
    sale = _venta_para_actualizar(item.venta_id)
    lifecycle.ensure_editable(sale)
    return item, sale

def actualizar_item(
    item_id: int,
    cantidad: Optional[int] = None,
    descuento_porcentaje: Optional[Decimal] = None,
    precio_unitario: Optional[Decimal] = None,
    operador: Optional[User] = None,
) -> SaleItem:
    item, sale = _item_para_actualizar(item_id)
    nueva = LineaVentaDTO(
        producto_id=item.producto_id,
        cantidad=cantidad if cantidad is not None else item.cantidad,
        precio_unitario=precio_unitario if precio_unitario is not None else item.precio_unitario,
        descuento_porcentaje=descuento_porcentaje if descuento_porcentaje is not None else item.descuento_porcentaje,
    )
    preparadas, productos = _preparar_lineas([nueva])
    _, amounts = preparadas[0]

    diferencia = amounts.cantidad - item.cantidad
    if diferencia > 0:
        _verificar_stock({item.producto_id: diferencia}, productos)
        reservar_stock(item.producto_id, diferencia, sale, operador)
    elif diferencia < 0:
        liberar_stock(item.producto_id, -diferencia, sale, operador, motivo=f"Edición de venta {sale.numero_venta}")

    apply_line(item, amounts)
    _recalcular_totales(sale)
    audit_log("SaleItem", item.id, "updated", {"cantidad": amounts.cantidad, "diferencia": diferencia}, operador)
    return item

def eliminar_item(item_id: int, operador: Optional[User] = None) -> Sale:
    item, sale = _item_para_actualizar(item_id)
    ensure(len(sale.items) > 1, "La venta debe conservar al menos un producto")
    liberar_stock(item.producto_id, item.cantidad, sale, operador, motivo=f"Línea eliminada de {sale.numero_venta}")
    sale.items.remove(item)
    _recalcular_totales(sale)
    audit_log("Sale", sale.id, "item_removed", {"item_id": item_id, "producto_id": item.producto_id}, operador)
    return sale


# =============================================================================
# Patrón de uso transaccional
# =============================================================================
# with transaction():
#     venta = crear_venta(cliente_id, metodo_pago_id, [LineaVentaDTO(7, 3)], current_user)
#
# with transaction():
#     editar_venta(venta.id, {"costo_envio": Decimal("800")}, operador=current_user)
