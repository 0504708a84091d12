from pathlib import Path

import pandas as pd
import pyreadstat


def read_xpt(xpt_path: Path) -> tuple[pd.DataFrame, pyreadstat.metadata_container]:
    try:
        df, meta = pyreadstat.read_xport(str(xpt_path))
    except Exception:
        # Retry with encoding fallback chain for non-ASCII XPT files
        for enc in ("cp1252", "iso-8859-1"):
            try:
                df, meta = pyreadstat.read_xport(str(xpt_path), encoding=enc)
                break
            except Exception:
                continue
        else:
            raise
    return df, meta


def read_domain(xpt_path: Path) -> pd.DataFrame:
    """Read a domain XPT and normalize column names to uppercase."""
    df, _ = read_xpt(xpt_path)
    df.columns = [c.upper() for c in df.columns]
    return df


def write_xpt(
    df: pd.DataFrame,
    xpt_path: Path,
    *,
    table_name: str,
    file_label: str = "",
    column_labels: list[str] | None = None,
) -> Path:
    """Write a DataFrame as a SAS transport (v5) file."""
    xpt_path.parent.mkdir(parents=True, exist_ok=True)
    pyreadstat.write_xport(
        df,
        str(xpt_path),
        file_label=file_label,
        column_labels=column_labels,
        table_name=table_name[:8].upper(),
        file_format_version=5,
    )
    return xpt_path
