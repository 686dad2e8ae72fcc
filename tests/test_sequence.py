import re
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from circulation_service.db import unit_of_work
from circulation_service.errors import Unavailable
from circulation_service.models import utcnow
from circulation_service.sequence import SequenceGenerator, format_accession_id


@pytest.fixture
def sequence(store):
    return SequenceGenerator(store)


def test_counter_starts_at_one(sequence):
    assert sequence.next_value("accession-2026") == 1
    assert sequence.next_value("accession-2026") == 2
    assert sequence.current_value("accession-2026") == 2


def test_counters_are_independent_per_name(sequence):
    sequence.next_value("accession-2026")
    sequence.next_value("accession-2026")
    assert sequence.next_value("accession-2027") == 1


def test_accession_id_format(sequence):
    assert sequence.next_accession_id(year=2026) == "2026-0001"
    assert sequence.next_accession_id(year=2026) == "2026-0002"
    assert format_accession_id(2026, 12345) == "2026-12345"


def test_accession_id_defaults_to_current_year(sequence):
    accession = sequence.next_accession_id()
    assert re.fullmatch(rf"{utcnow().year}-\d{{4}}", accession)


def test_concurrent_callers_get_contiguous_values(sequence):
    prior = sequence.next_value("accession-2026")

    with ThreadPoolExecutor(max_workers=8) as pool:
        values = list(pool.map(lambda _: sequence.next_value("accession-2026"), range(20)))

    assert len(set(values)) == 20
    assert sorted(values) == list(range(prior + 1, prior + 21))


def test_first_use_race_creates_single_counter(sequence):
    with ThreadPoolExecutor(max_workers=6) as pool:
        values = list(pool.map(lambda _: sequence.next_value("fresh-counter"), range(6)))

    assert sorted(values) == [1, 2, 3, 4, 5, 6]


def test_rolled_back_caller_leaves_no_gap(store, sequence):
    sequence.next_value("accession-2026")

    with pytest.raises(RuntimeError):
        with unit_of_work(store) as session:
            assert sequence.next_value("accession-2026", session=session) == 2
            raise RuntimeError("insert failed")

    assert sequence.next_value("accession-2026") == 2


def test_store_failure_is_an_error_not_a_fallback(tmp_path):
    missing = tmp_path / "no-such-dir" / "db.sqlite"
    engine = create_engine(f"sqlite:///{missing}")
    generator = SequenceGenerator(sessionmaker(bind=engine))

    with pytest.raises(Unavailable):
        generator.next_accession_id(year=2026)


def test_reset(sequence):
    for _ in range(3):
        sequence.next_value("accession-2026")
    sequence.reset("accession-2026")
    assert sequence.next_value("accession-2026") == 1

    with pytest.raises(ValueError):
        sequence.reset("accession-2026", -1)
