"""Tolerant CSV reading for spreadsheet exports.

Quoted cells may span lines and carry doubled quotes. Rows shorter than the
header are padded with empty strings, longer rows lose their extra cells, and
a broken record ends the scan instead of failing the whole file.
"""

import csv
import io
import logging

logger = logging.getLogger(__name__)


def _clean_header(value: str) -> str:
    return value.replace('"', "").strip()


def _is_blank(record: list[str]) -> bool:
    return not any(cell.strip() for cell in record)


def read_records(text: str) -> list[list[str]]:
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text, newline=""), strict=False)
    records: list[list[str]] = []
    while True:
        try:
            record = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            logger.warning("Stopped reading CSV at line %s: %s", reader.line_num, exc)
            break
        if _is_blank(record):
            continue
        records.append(record)
    return records


def parse_csv(text: str | None) -> list[dict[str, str]]:
    if not text or not text.strip():
        return []

    records = read_records(text)
    if not records:
        return []

    headers = [_clean_header(h) for h in records[0]]
    rows: list[dict[str, str]] = []
    for record in records[1:]:
        values = [cell.strip() for cell in record]
        row = {}
        for index, header in enumerate(headers):
            row[header] = values[index] if index < len(values) else ""
        rows.append(row)
    return rows
