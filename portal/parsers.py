"""Roster file decoding.

Turns an uploaded CSV buffer into positional rows. Rosters are headerless:
the first line is data, and column meaning is fixed by the role layout
(see ``portal.pipelines.normalization.COLUMN_LAYOUT``).
"""
from __future__ import annotations

import io
import logging
from pathlib import PurePath

import pandas as pd

from .pipelines.normalization import COLUMN_LAYOUT

logger = logging.getLogger(__name__)

RawRow = list[str]

# Widest role layout; cells past it are never read
ROSTER_WIDTH = max(len(layout) for layout in COLUMN_LAYOUT.values())


class MalformedInputError(Exception):
    """Raised when an upload cannot be decoded as delimited text."""
    pass


def has_allowed_extension(filename: str, allowed: tuple[str, ...] = (".csv",)) -> bool:
    """Check the upload's extension (case-insensitive)."""
    return PurePath(filename).suffix.lower() in {ext.lower() for ext in allowed}


def _decode_text(content: bytes) -> str:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedInputError(f"Roster is not UTF-8 text: {e}") from e

    if "\x00" in text:
        raise MalformedInputError("Roster contains binary data")
    return text


def _cell(value: object) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value)


def decode_roster(content: bytes, width: int = ROSTER_WIDTH) -> list[RawRow]:
    """Decode a headerless CSV roster into rows of strings.

    Every row comes back exactly ``width`` cells wide, whatever the first
    line looks like: short rows are padded with empty strings and extra
    trailing fields (including a trailing comma) are dropped. Missing
    values are left for the normalizer to reject row by row.

    Args:
        content: Raw uploaded bytes
        width: Number of leading columns to keep

    Returns:
        Rows in file order; blank lines are skipped

    Raises:
        MalformedInputError: If the bytes are not delimited UTF-8 text
    """
    text = _decode_text(content)
    if not text.strip():
        logger.info("Roster is empty")
        return []

    columns = list(range(width))
    try:
        df = pd.read_csv(
            io.StringIO(text),
            header=None,
            names=columns,
            usecols=columns,
            index_col=False,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as e:
        logger.error(f"CSV parsing failed: {e}")
        raise MalformedInputError(f"Failed to parse CSV: {e}") from e

    rows = [[_cell(value) for value in record] for record in df.itertuples(index=False, name=None)]
    logger.info(f"Decoded roster with {len(rows)} rows and {len(df.columns)} columns")
    return rows
