import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

import pandas as pd

from funding_arb.core.models import ArbitrageOpportunity


OPPORTUNITY_COLUMNS = [
    "DETECTED_AT",
    "SYMBOL",
    "LONG_EXCHANGE",
    "SHORT_EXCHANGE",
    "LONG_FUNDING_RATE",
    "SHORT_FUNDING_RATE",
    "FUNDING_DIFF",
    "PRICE_DEVIATION",
    "EXPECTED_PROFIT",
]


def opportunities_to_frame(opportunities: Iterable[ArbitrageOpportunity]) -> pd.DataFrame:
    """One row per opportunity, in the order given. Decimals are written as strings."""
    rows = []
    for o in opportunities:
        rows.append({
            "DETECTED_AT": datetime.fromtimestamp(o.detected_at_ms / 1000, tz=timezone.utc),
            "SYMBOL": o.symbol,
            "LONG_EXCHANGE": o.long_exchange,
            "SHORT_EXCHANGE": o.short_exchange,
            "LONG_FUNDING_RATE": None if o.long_funding_rate is None else str(o.long_funding_rate),
            "SHORT_FUNDING_RATE": None if o.short_funding_rate is None else str(o.short_funding_rate),
            "FUNDING_DIFF": str(o.funding_diff),
            "PRICE_DEVIATION": str(o.price_deviation),
            "EXPECTED_PROFIT": str(o.expected_profit),
        })
    return pd.DataFrame(rows, columns=OPPORTUNITY_COLUMNS)


def save_df_to_csv(
    df: pd.DataFrame,
    file_path: Union[str, Path],
    *,
    index: bool = False,
    create_dirs: bool = True,
    date_format: Optional[str] = None,
    mode: str = "w",
    **kwargs,
) -> None:
    """Save a DataFrame to CSV.

    Parameters
    - df: DataFrame to write
    - file_path: Destination CSV path
    - index: Whether to write the index
    - create_dirs: Create parent directories if missing
    - date_format: strftime format for datetimes
    - mode: 'w' to overwrite, 'a' to append. Appending writes the header
      only when the file does not exist yet.
    - kwargs: Passed through to pandas.DataFrame.to_csv

    Raises
    - ValueError: If df is not a pandas DataFrame
    """
    if not isinstance(df, pd.DataFrame):
        raise ValueError("df must be a pandas DataFrame")

    parent = os.path.dirname(os.path.abspath(file_path))
    if create_dirs and parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    header = kwargs.pop("header", mode != "a" or not os.path.exists(file_path))
    df.to_csv(
        file_path,
        index=index,
        date_format=date_format,
        mode=mode,
        header=header,
        **kwargs,
    )


def save_opportunities_snapshot(
    opportunities: Iterable[ArbitrageOpportunity],
    signals_path: Union[str, Path],
    now: Optional[datetime] = None,
) -> Optional[Path]:
    """
    Append one cycle's opportunities to the day's CSV.

    Returns the file written, or ``None`` when there was nothing to write.
    """
    df = opportunities_to_frame(opportunities)
    if df.empty:
        return None

    now = now or datetime.now(timezone.utc)
    file_path = Path(signals_path) / f"funding_arb_opportunities_{now:%Y-%m-%d}.csv"
    save_df_to_csv(df, file_path, mode="a", date_format="%Y-%m-%d %H:%M:%S.%f")
    return file_path
