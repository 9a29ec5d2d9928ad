from visittrack.csv_parser import parse_csv
from visittrack.exporter import export_to_csv


def test_parse_empty_input_returns_no_rows():
    assert parse_csv("") == []
    assert parse_csv("   \n\n") == []
    assert parse_csv(None) == []


def test_header_only_file_returns_no_rows():
    assert parse_csv("name,category\n") == []


def test_quoted_newline_stays_in_one_row():
    text = 'storeName,latestUpdate,nextSteps\n"Pet Paradise","Line one\nLine two","Call back"\n'

    rows = parse_csv(text)

    assert len(rows) == 1
    assert rows[0]["storeName"] == "Pet Paradise"
    assert rows[0]["latestUpdate"] == "Line one\nLine two"
    assert rows[0]["nextSteps"] == "Call back"


def test_blank_line_inside_quoted_cell_is_kept():
    text = 'name,notes\nA,"first\n\nthird"\nB,plain\n'

    rows = parse_csv(text)

    assert [r["name"] for r in rows] == ["A", "B"]
    assert rows[0]["notes"] == "first\n\nthird"


def test_doubled_quotes_and_embedded_commas():
    text = 'name,notes\n"Foo, Bar","He said ""hello"""\n'

    rows = parse_csv(text)

    assert rows == [{"name": "Foo, Bar", "notes": 'He said "hello"'}]


def test_missing_trailing_cells_default_to_empty_and_extras_are_dropped():
    text = "a,b,c\n1\n1,2,3,4\n"

    rows = parse_csv(text)

    assert rows[0] == {"a": "1", "b": "", "c": ""}
    assert rows[1] == {"a": "1", "b": "2", "c": "3"}


def test_headers_and_cells_are_trimmed_and_bom_ignored():
    text = '\ufeff "name" , category \r\n  Foo Store ,PET_STORE\r\n\r\n'

    rows = parse_csv(text)

    assert rows == [{"name": "Foo Store", "category": "PET_STORE"}]


def test_unterminated_quote_does_not_raise():
    rows = parse_csv('name,notes\nA,"never closed\nB,still inside\n')

    assert len(rows) == 1
    assert rows[0]["name"] == "A"


def test_export_then_parse_keeps_rows_and_values():
    original = (
        "name,notes,count\n"
        '"Foo, Bar","multi\nline ""quoted"" text",3\n'
        "Plain Store,,7\n"
    )
    first = parse_csv(original)

    exported = export_to_csv(first, "roundtrip")
    second = parse_csv(exported["content"])

    assert len(second) == len(first) == 2
    assert second == first
