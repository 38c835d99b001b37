"""Monthly sale numbering and batch ids."""

from __future__ import annotations

from datetime import datetime

import pytest

from app.extensions import db
from app.core import services
from app.core.errors import UniquenessError
from app.core.models import SequenceCounter
from app.core.services import next_sale_number, next_sequence, transaction
from app.core.shipments import next_batch_id


def _suffix(numero: str) -> int:
    return int(numero.rsplit("-", 1)[-1])


def test_numbers_increase_within_month(seed, make_sale):
    numeros = [make_sale().numero_venta for _ in range(3)]

    assert [_suffix(n) for n in numeros] == [1, 2, 3]
    assert len({n.rsplit("-", 1)[0] for n in numeros}) == 1


def test_counter_seeded_from_highest_existing_number(seed, make_sale):
    sale = make_sale()
    prefix = sale.numero_venta.rsplit("-", 1)[0]
    sale.numero_venta = f"{prefix}-000041"
    db.session.query(SequenceCounter).delete()
    db.session.commit()

    assert make_sale().numero_venta == f"{prefix}-000042"


def test_existing_number_is_skipped(seed, make_sale):
    sale = make_sale()
    prefix = sale.numero_venta.rsplit("-", 1)[0]
    sale.numero_venta = f"{prefix}-000002"
    db.session.commit()

    assert make_sale().numero_venta == f"{prefix}-000003"


def test_collision_after_retries_is_uniqueness_error(app, seed, make_sale):
    app.config["SALE_NUMBER_MAX_RETRIES"] = 1
    sale = make_sale()
    prefix = sale.numero_venta.rsplit("-", 1)[0]
    sale.numero_venta = f"{prefix}-000002"
    db.session.commit()

    with pytest.raises(UniquenessError):
        make_sale()


def test_each_month_has_its_own_sequence(seed, make_sale, monkeypatch):
    make_sale()
    monkeypatch.setattr(services, "_now", lambda: datetime(2031, 1, 15, 9, 30))

    assert make_sale().numero_venta == "VTA-012031-000001"


def test_sequence_keys_are_independent(app):
    with transaction():
        a = [next_sequence("venta:203001") for _ in range(2)]
        b = next_sequence("lote:20300101", seed=lambda: 7)

    assert a == [1, 2]
    assert b == 8


def test_batch_id_format(app):
    ahora = datetime(2026, 10, 17, 14, 5)
    with transaction():
        first = next_batch_id(ahora)
        second = next_batch_id(ahora)

    assert first == "ENV-20261017-1405-01"
    assert second == "ENV-20261017-1405-02"


def test_sale_number_without_existing_rows(app):
    with transaction():
        numero = next_sale_number(datetime(2026, 3, 2))
    assert numero == "VTA-032026-000001"
