"""Append-only CSV log of completed analyses."""

from __future__ import annotations

import csv
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from core import AnalysisResult


logger = logging.getLogger(__name__)


RUN_LOG_HEADER = [
    "Date",
    "Time",
    "Person",
    "State",
    "Age",
    "TotalPortfolio",
    "CashBalance",
    "AnnualWithdrawal",
    "TotalTax",
    "MarketReturn1Y",
    "Action",
]


@dataclass(frozen=True)
class RunRecord:
    timestamp: datetime
    person: str
    state: str
    age: int
    total_portfolio: float
    cash_balance: float
    annual_withdrawal: float
    total_tax: float
    market_return: float
    action: str

    @classmethod
    def from_result(
        cls, result: AnalysisResult, timestamp: Optional[datetime] = None
    ) -> "RunRecord":
        profile = result.profile
        return cls(
            timestamp=timestamp or datetime.now(),
            person=profile.label,
            state=result.state_name,
            age=profile.age,
            total_portfolio=profile.total_portfolio,
            cash_balance=profile.cash_balance,
            annual_withdrawal=result.plan.ira_withdrawal,
            total_tax=result.taxes.total,
            market_return=result.market_return,
            action=result.action,
        )

    def as_row(self) -> list[str]:
        return [
            self.timestamp.strftime("%Y-%m-%d"),
            self.timestamp.strftime("%H:%M:%S"),
            self.person,
            self.state,
            str(self.age),
            f"{self.total_portfolio:.0f}",
            f"{self.cash_balance:.0f}",
            f"{self.annual_withdrawal:.0f}",
            f"{self.total_tax:.0f}",
            f"{self.market_return:.4f}",
            self.action,
        ]


def append_run(record: RunRecord, path: str) -> str:
    """Append ``record`` to the log at ``path``, writing the header on first use."""
    new_file = not os.path.exists(path)
    with open(path, "a", newline="") as f:
        writer = csv.writer(f)
        if new_file:
            writer.writerow(RUN_LOG_HEADER)
        writer.writerow(record.as_row())
    logger.info("Logged %s analysis for %s to %s", record.action, record.person, path)
    return os.path.abspath(path)
