"""Pydantic schemas for financial statements responses."""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MergedStatementReport(BaseModel):
    """One fiscal period with every statement Alpha Vantage reported for it.

    Sections are passed through as returned upstream (string values); a
    section is null when the provider has no report for that period.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    fiscal_date_ending: str = Field(..., description="Period end date (yyyy-MM-dd).")
    income_statement: Dict[str, Any] | None = Field(None, description="Income statement report.")
    balance_sheet: Dict[str, Any] | None = Field(None, description="Balance sheet report.")
    cash_flow: Dict[str, Any] | None = Field(None, description="Cash flow report.")
    ratio: Dict[str, Any] | None = Field(
        None,
        description="Earnings record for the period (reported/estimated EPS, surprise).",
    )


class FinancialStatementsResponse(BaseModel):
    """Merged statements for one ticker, newest period first.

    Report lists are omitted when the requested period filter excludes them
    or the provider returned none.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    symbol: str
    annual_reports: List[MergedStatementReport] | None = None
    quarterly_reports: List[MergedStatementReport] | None = None

    @classmethod
    def from_service(cls, data: Dict[str, Any]) -> "FinancialStatementsResponse":
        payload: Dict[str, Any] = {"symbol": data["symbol"]}
        if data.get("annualReports"):
            payload["annualReports"] = data["annualReports"]
        if data.get("quarterlyReports"):
            payload["quarterlyReports"] = data["quarterlyReports"]
        return cls.model_validate(payload)

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)
