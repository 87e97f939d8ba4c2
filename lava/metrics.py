from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    vault_rows: List[Dict[str, Any]] = field(default_factory=list)
    strategy_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_vault(self, row: Dict[str, Any]) -> None:
        self.vault_rows.append(row)

    def add_strategy_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.strategy_rows.extend(rows)

    def vault_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.vault_rows)

    def strategy_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.strategy_rows)

    def allocation_df(self) -> pd.DataFrame:
        """Strategy assets per tick, one column per strategy."""
        df = self.strategy_df()
        if df.empty:
            return df
        return df.pivot_table(index="tick", columns="name", values="assets", aggfunc="sum").fillna(0)
