from __future__ import annotations

import io
import math
import re
import unicodedata
from datetime import date, datetime

import pandas as pd


def read_excel_bytes(content: bytes) -> pd.DataFrame:
    """Read .xlsx bytes into a DataFrame (first sheet)."""
    bio = io.BytesIO(content)
    df = pd.read_excel(bio)
    df.columns = [str(c).strip() for c in df.columns]
    return df


def write_excel_bytes(sheets: dict[str, pd.DataFrame]) -> bytes:
    """Write one or more DataFrames to an in-memory .xlsx workbook."""
    bio = io.BytesIO()
    with pd.ExcelWriter(bio, engine="openpyxl") as writer:
        for name, df in sheets.items():
            df.to_excel(writer, sheet_name=name[:31], index=False)
    return bio.getvalue()


def normalize_col_name(name: str) -> str:
    """Normalize spreadsheet column names to an ASCII snake_case token.

    Handles accents, non-breaking spaces, tabs and punctuation.
    """
    s = str(name or "").strip().lower()
    s = unicodedata.normalize("NFKD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = s.replace("\u00a0", " ")
    s = re.sub(r"[\s\t]+", " ", s)
    # keep alnum + spaces, turn the rest into spaces
    s = re.sub(r"[^a-z0-9 ]+", " ", s)
    s = re.sub(r"\s+", "_", s).strip("_")
    return s


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [normalize_col_name(c) for c in df.columns]
    return df


def is_blank(value) -> bool:
    if value is None:
        return True
    if value is pd.NaT or (isinstance(value, float) and pd.isna(value)):
        return True
    return not str(value).strip() or str(value).strip().lower() in ("nan", "nat")


def coerce_date(value, *, field: str = "date") -> date:
    """Coerce common Excel/pandas date representations to a date.

    Accepts datetimes, pandas Timestamps, ISO strings and the D/M/Y and Y/M/D
    variants spreadsheets produce. Raises ValueError when empty or unreadable.
    """
    if is_blank(value):
        raise ValueError(f"{field} is empty")

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    # pandas Timestamp
    if hasattr(value, "to_pydatetime"):
        return value.to_pydatetime().date()

    s = str(value).strip()
    try:
        return datetime.fromisoformat(s).date()
    except ValueError:
        pass

    for fmt in ("%Y/%m/%d", "%d-%m-%Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    raise ValueError(f"{field} is not a valid date: {value!r}")


def coerce_float(value) -> float | None:
    """Coerce common Excel/pandas numeric representations to float.

    Returns None when value is empty, NaN or infinite. Accepts ',' as decimal
    separator.
    """
    if is_blank(value):
        return None

    if isinstance(value, (int, float)):
        out = float(value)
        return out if math.isfinite(out) else None

    s = str(value).strip()
    # 1.234,56 -> 1234.56
    if "," in s and "." in s:
        s = s.replace(".", "").replace(",", ".")
    elif "," in s:
        s = s.replace(",", ".")

    try:
        out = float(s)
    except ValueError:
        return None
    return out if math.isfinite(out) else None


def coerce_str(value) -> str | None:
    """Trimmed string, or None for blanks. Whole floats lose their '.0'."""
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
