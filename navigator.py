"""Interactive console session for the retirement navigator."""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Mapping, Optional, Tuple

from core import (
    ACTION_HOLD_FULL,
    ACTION_REFILL_GAINS,
    CONFIG_FILE,
    AnalysisResult,
    EngineConfig,
    RetirementProfile,
    StateTaxProfile,
    analyze,
    age_warnings,
    apply_emergency_expense,
    balance_warnings,
    config_from_dict,
    load_config,
    parse_dollars,
    parse_percent,
)
from market_data import MarketData, MarketDataCache, MarketDataError, refresh_market_data
from run_log import RunRecord, append_run
from state_taxes import build_state_database, custom_state_profile, describe_state, lookup_state


logger = logging.getLogger(__name__)

InputFn = Callable[[str], str]

RULE = "=" * 65


class AnalysisCancelled(Exception):
    """The operator declined to continue past a plausibility warning."""


def prompt_amount(prompt: str, input_fn: InputFn = input) -> float:
    """Ask until a non-negative amount is entered."""
    while True:
        text = input_fn(prompt).replace("%", "")
        if not text.strip():
            print("   [Please enter a value]")
            continue
        try:
            return parse_dollars(text)
        except ValueError:
            print("   [Invalid - enter a positive number]")


def prompt_optional_amount(prompt: str, input_fn: InputFn = input) -> float:
    """Amount that defaults to 0 when left blank or unreadable."""
    try:
        return parse_dollars(input_fn(prompt) or "0")
    except ValueError:
        return 0.0


def prompt_percent(prompt: str, input_fn: InputFn = input) -> float:
    """Ask for a percentage such as '5%' or '3.07' and return it as a fraction."""
    while True:
        try:
            return parse_percent(input_fn(prompt))
        except ValueError:
            print("   [Invalid - enter a percentage between 0% and 100%]")


def prompt_rate(prompt: str, input_fn: InputFn = input) -> float:
    """Ask for a decimal fraction; negative values are allowed."""
    while True:
        text = input_fn(prompt).replace("%", "").strip()
        try:
            return float(text)
        except ValueError:
            print("   [Invalid - enter a number such as 0.10]")


def confirm(prompt: str, input_fn: InputFn = input) -> bool:
    return input_fn(prompt).strip().upper() in ("Y", "YES")


def prompt_custom_state(name: str, filing_status: str, input_fn: InputFn = input) -> StateTaxProfile:
    print(f"\nManual entry for {name}:")
    if not confirm("Does this state have income tax? (Y/N): ", input_fn):
        return custom_state_profile(name, False, filing_status)
    rate = prompt_percent("Enter flat tax rate (e.g., 5%): ", input_fn)
    deduction = prompt_amount(f"Enter standard deduction for {filing_status.title()}: ", input_fn)
    ss_taxed = confirm("Is Social Security taxed? (Y/N): ", input_fn)
    return custom_state_profile(
        name,
        True,
        filing_status,
        flat_rate=rate,
        deduction=deduction,
        social_security_taxed=ss_taxed,
    )


def select_state(
    filing_status: str,
    database: Mapping[str, StateTaxProfile],
    input_fn: InputFn = input,
) -> StateTaxProfile:
    while True:
        name = input_fn("Enter State (full name or abbreviation): ").strip()
        if not name:
            print("[Please enter a state name]")
            continue
        profile = lookup_state(name, database)
        if profile is None:
            print(f"[{name} not in database. Using manual entry.]")
            profile = prompt_custom_state(name, filing_status, input_fn)
        print(f"\n{profile.name} Tax Profile Loaded")
        for line in describe_state(profile, filing_status):
            print(f"   - {line}")
        return profile


def _confirm_warnings(warnings, input_fn: InputFn) -> None:
    for warning in warnings:
        print(f"[VALIDATION] {warning}")
    if warnings and not confirm("Continue with these values? (Y/N): ", input_fn):
        raise AnalysisCancelled("; ".join(warnings))


def gather_profile(
    year: int,
    analysis_count: int,
    database: Mapping[str, StateTaxProfile],
    cfg: EngineConfig,
    input_fn: InputFn = input,
) -> Tuple[RetirementProfile, StateTaxProfile]:
    """Collect one person's inputs; emergency expenses are deducted before the snapshot."""
    print("\n--- PROFILE INFORMATION ---")
    label = input_fn("Enter Name/Label (e.g., 'Dad', 'Self', 'Mom'): ").strip()
    label = label or f"Person {analysis_count}"

    birth_year = int(prompt_amount("Enter Birth Year (e.g., 1959): ", input_fn))
    age = year - birth_year
    _confirm_warnings(age_warnings(age), input_fn)

    monthly_need = prompt_amount("Enter Monthly Spending Need (Pre-Tax): ", input_fn)
    social_security = prompt_amount("Enter Annual Social Security (0 if none): ", input_fn)
    tax_exempt = prompt_optional_amount(
        "Tax-Exempt Interest (muni bonds, etc., 0 if none): $", input_fn
    )
    filing = input_fn("Filing Status (J=Joint, S=Single, press Enter for Joint): ")
    filing_status = "single" if filing.strip().upper() == "S" else "joint"

    print("\n--- STATE TAX INFORMATION ---")
    state_profile = select_state(filing_status, database, input_fn)

    print("\n--- CURRENT BALANCES ---")
    cash = prompt_amount(f"Enter Current Cash Balance ({cfg.cash_ticker}): ", input_fn)
    stock = prompt_amount(f"Enter Current Stock Balance ({cfg.stock_ticker}): ", input_fn)
    prior_year = 0.0
    if age >= 72:
        prior_year = prompt_amount(
            "Enter TOTAL IRA Value on Dec 31 of LAST YEAR (for RMD): ", input_fn
        )
    emergency = prompt_optional_amount(
        "Any One-Time Emergency Expenses Today? (Enter $ amount or 0): $", input_fn
    )

    _confirm_warnings(balance_warnings(age, cash, stock, prior_year, emergency), input_fn)
    if emergency > 0:
        print(f"[ADJUSTMENT] Deducting ${emergency:,.0f} from Cash.")
        cash = apply_emergency_expense(cash, emergency)

    profile = RetirementProfile(
        label=label,
        birth_year=birth_year,
        age=age,
        filing_status=filing_status,
        monthly_need=monthly_need,
        social_security=social_security,
        cash_balance=cash,
        stock_balance=stock,
        tax_exempt_interest=tax_exempt,
        prior_year_ira_balance=prior_year,
    )
    return profile, state_profile


def obtain_market_data(
    cache: Optional[MarketDataCache],
    cfg: EngineConfig,
    input_fn: InputFn = input,
    now: Optional[datetime] = None,
) -> Tuple[MarketData, Optional[MarketDataCache]]:
    """Cached or live market data, falling back to operator entry on failure."""
    now = now or datetime.now()
    print("\n--- MARKET DATA ---")
    try:
        market, cache, from_cache = refresh_market_data(cfg.stock_ticker, cache, now, cfg)
    except MarketDataError as exc:
        logger.warning("%s", exc)
        print("\n   [MANUAL ENTRY REQUIRED]")
        market = MarketData(
            one_year_return=prompt_rate("   1-Year Return (e.g., 0.10 for 10%): ", input_fn),
            dividend_yield=prompt_percent("   Dividend Yield (e.g., 1.5%): ", input_fn),
        )
        return market, cache

    if from_cache:
        print(f"[Using cached market data from {cache.fetched_at:%H:%M:%S}]")
    print(f"   {cfg.stock_ticker} 1-Year Return: {market.one_year_return:.2%}")
    print(f"   Current Price: ${market.current_price:,.2f}")
    print(f"   Dividend Yield: {market.dividend_yield:.2%}")
    return market, cache


def print_report(result: AnalysisResult, cfg: EngineConfig) -> None:
    profile = result.profile
    plan = result.plan
    taxes = result.taxes

    print(f"\n{RULE}")
    print(f"            ANALYSIS REPORT FOR {profile.label.upper()} ({result.year})")
    print(RULE)

    if plan.rmd_status == "required":
        print(f"[IRS ALERT] RMD (${plan.rmd_amount:,.0f}) exceeds spending need "
              f"(${profile.annual_need:,.0f}).")
        print(f"            You MUST withdraw ${plan.rmd_amount:,.0f} to avoid penalties.")
    elif plan.rmd_status == "satisfied":
        print(f"[IRS OK] Your spending (${plan.ira_withdrawal:,.0f}) satisfies RMD requirement.")
    else:
        print(f"[RMD] Not yet required (starts at age {profile.rmd_start_age}).")

    print(f"\n[TAX ESTIMATE - {result.state_name}]")
    print(f"   Gross Income:     ${taxes.gross_income:,.0f}")
    print(f"   Federal Tax:      ${taxes.federal:,.0f}")
    print(f"   State Tax:        ${taxes.state:,.0f}")
    print(f"   TOTAL Tax:        ${taxes.total:,.0f}")
    print(f"   NET Income:       ${taxes.net_income:,.0f}")
    print(f"   Effective Rate:   {taxes.effective_rate:.1%}")

    print("\n[CASH STRATEGY]")
    print(f"   Target Buffer:    ${result.target_cash:,.0f} ({result.target_years} years)")
    print(f"   Current Cash:     ${profile.cash_balance:,.0f}")
    if result.cash_deficit > 0:
        print(f"   Shortfall:        ${result.cash_deficit:,.0f}")
    else:
        print(f"   Surplus:          ${-result.cash_deficit:,.0f}")
    print(f"   Months Covered:   {result.cash_months:.1f} months")
    if result.cash_months < cfg.min_cash_months_warning:
        print(f"\n   CASH ALERT: Only {result.cash_months:.1f} months of expenses remaining!")

    forecast = result.forecast
    print(f"\n[SIMULATION] {forecast.simulations:,} scenarios to age {cfg.terminal_age} "
          f"(stress-tested with {cfg.tax_safety_margin:.0%} tax buffer)")
    if len(forecast):
        print("\n   --- PORTFOLIO SURVIVAL FORECAST ---")
        for age, pct in forecast.items():
            marker = " <<<" if pct < 50 else ""
            print(f"   Age {age:3d}: {pct:5.1f}% {forecast.status_label(pct)}{marker}")
        summary = {
            "strong": "Strong financial position across most scenarios.",
            "adequate": "Adequate but monitor closely. Consider reducing spending if possible.",
            "high_risk": "High risk of portfolio depletion. Recommend professional consultation.",
        }
        print(f"\n   [SUMMARY] {summary[forecast.assessment()]}")

    print(f"\n{RULE}")
    print("                    RECOMMENDED ACTIONS")
    print(RULE)
    if result.action == ACTION_HOLD_FULL:
        print("ACTION: HOLD & WITHDRAW")
        print(f"   1. Do NOT sell any {cfg.stock_ticker} today.")
        print(f"   2. Withdraw monthly income (${plan.ira_withdrawal / 12:,.0f}) "
              f"strictly from {cfg.cash_ticker}.")
    elif result.action == ACTION_REFILL_GAINS:
        print("ACTION: REBALANCE (MARKET UP - HARVEST GAINS)")
        print(f"   1. SELL  ${result.cash_deficit:,.2f} of {cfg.stock_ticker}")
        print(f"   2. BUY   ${result.cash_deficit:,.2f} of {cfg.cash_ticker}")
        print(f"   Refills the {result.target_years}-year safety buffer.")
    else:
        print("ACTION: HOLD (MARKET DOWN - PRESERVE CAPITAL)")
        print(f"   Market is DOWN {result.market_return:.2%} over the past year; do not sell stocks.")
        print(f"   Continue spending from {cfg.cash_ticker} "
              f"({result.cash_months:.1f} months remaining).")
        if result.estimated_dividends > cfg.min_dividend_alert:
            print(f"   Expect about ${result.estimated_dividends:,.0f} in annual dividends.")
        if result.cash_months < 3:
            print(f"\n   CRITICAL: Only {result.cash_months:.1f} months of cash remaining!")


def run_session(
    cfg: EngineConfig,
    database: Mapping[str, StateTaxProfile],
    input_fn: InputFn = input,
    seed: Optional[int] = None,
) -> int:
    """Run analyses until the operator stops; returns how many were started."""
    analysis_count = 0
    cache: Optional[MarketDataCache] = None

    while True:
        analysis_count += 1
        print(f"\n{RULE}\n   RETIREMENT NAVIGATOR\n{RULE}")
        print("Note: This tool provides estimates only - not financial advice")
        try:
            year = datetime.now().year
            profile, state_profile = gather_profile(
                year, analysis_count, database, cfg, input_fn
            )
            market, cache = obtain_market_data(cache, cfg, input_fn)
            result = analyze(profile, state_profile, market, year, cfg, seed=seed)
            print_report(result, cfg)
            path = append_run(RunRecord.from_result(result), cfg.log_path)
            print(f"\nAnalysis saved to: {path}")
        except AnalysisCancelled:
            print("Analysis cancelled. Starting over...")
            continue
        except Exception as exc:
            logger.exception("Analysis failed")
            print("\n!!! ERROR OCCURRED !!!")
            print(f"Type: {type(exc).__name__}")
            print(f"Message: {exc}")

        if not confirm("\nRun analysis for another person? (Y/N): ", input_fn):
            print(f"\nSession complete. {analysis_count} analysis(es) performed.")
            return analysis_count


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Retirement withdrawal, tax and survival analysis.")
    parser.add_argument("-c", "--config", default=CONFIG_FILE, help="Optional JSON file with assumption overrides")
    parser.add_argument("-l", "--log-file", help="CSV file that receives one row per analysis")
    parser.add_argument("-s", "--seed", type=int, help="Seed for the Monte Carlo simulation")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = config_from_dict(load_config(args.config))
    if args.log_file:
        cfg = replace(cfg, log_path=args.log_file)
    run_session(cfg, build_state_database(), seed=args.seed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
