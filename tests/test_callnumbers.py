import pytest

from circulation_service.callnumbers import author_code, ddc_code, generate_call_number


@pytest.mark.parametrize(
    "category, expected",
    [
        ("Science", "500"),
        ("  History ", "900"),
        ("history of art", "900"),
        ("music", "780"),
        ("Cooking", "000"),
        ("", "000"),
        (None, "000"),
    ],
)
def test_ddc_code(category, expected):
    assert ddc_code(category) == expected


@pytest.mark.parametrize(
    "author, expected",
    [
        ("Carl Sagan", "SAGA"),
        ("Robert C. Martin", "MART"),
        ("Ng", "NG"),
        ("Jean-Paul O'Neil", "ONEI"),
        ("   ", "ANON"),
        (None, "ANON"),
    ],
)
def test_author_code(author, expected):
    assert author_code(author) == expected


def test_generate_call_number():
    assert generate_call_number("Science", "Carl Sagan", 1980) == "500-SAGA-1980"
    assert generate_call_number("Technology", "Robert C. Martin") == "600-MART"
    assert generate_call_number(None, None) == "000-ANON"


def test_catalog_entry_gets_call_number_and_accession(facade):
    book = facade.add_book(
        {"title": "Cosmos", "author": "Carl Sagan", "category": "Science", "year": 1980}
    )
    assert book["call_number"] == "500-SAGA-1980"
    assert book["accession_id"].endswith("-0001")
    assert book["available_copies"] == book["total_copies"] == 1

    explicit = facade.add_book({"title": "Dune", "call_number": " 813-HERB "})
    assert explicit["call_number"] == "813-HERB"
    assert explicit["accession_id"].endswith("-0002")
