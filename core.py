"""Core functionality for retirement projections."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field, fields, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numba import njit, prange


logger = logging.getLogger(__name__)


CONFIG_FILE = "config.json"

FILING_STATUSES = ("single", "joint")

# Annual total returns of a broad US stock index proxy, oldest first.
HISTORICAL_RETURNS = (
    0.438, -0.083, -0.251, -0.438, -0.086, 0.499, -0.011, 0.467, 0.319, -0.353,
    0.292, -0.011, -0.106, -0.127, 0.191, 0.250, 0.190, 0.358, -0.084, 0.052,
    0.057, 0.183, 0.308, 0.236, 0.181, -0.012, 0.525, 0.326, 0.064, -0.104,
    0.437, 0.120, 0.003, 0.266, -0.088, 0.226, 0.164, 0.124, -0.099, 0.238,
    0.108, -0.082, 0.035, 0.142, 0.187, -0.143, -0.259, 0.370, 0.238, -0.070,
    0.065, 0.185, 0.317, -0.047, 0.204, 0.223, 0.061, 0.312, 0.185, 0.057,
    0.165, 0.314, -0.032, 0.302, 0.074, 0.099, 0.013, 0.373, 0.226, 0.331,
    0.283, 0.208, -0.090, -0.118, -0.219, 0.283, 0.107, 0.048, 0.156, 0.055,
    -0.365, 0.259, 0.148, 0.021, 0.158, 0.321, 0.135, 0.013, 0.117, 0.216,
    -0.042, 0.312, 0.180, 0.284, -0.180, 0.260,
)

# IRS Uniform Lifetime Table divisors (2022+), keyed by age.
RMD_TABLE = {
    72: 27.4, 73: 26.5, 74: 25.5, 75: 24.6, 76: 23.7, 77: 22.9, 78: 22.0, 79: 21.1,
    80: 20.2, 81: 19.4, 82: 18.5, 83: 17.7, 84: 16.8, 85: 16.0, 86: 15.2, 87: 14.4,
    88: 13.7, 89: 12.9, 90: 12.2, 91: 11.5, 92: 10.8, 93: 10.1, 94: 9.5, 95: 8.9,
    96: 8.4, 97: 7.8, 98: 7.3, 99: 6.8, 100: 6.4, 101: 6.0, 102: 5.6, 103: 5.2,
    104: 4.9, 105: 4.6, 106: 4.3, 107: 4.1, 108: 3.9, 109: 3.7, 110: 3.5, 111: 3.4,
    112: 3.3, 113: 3.1, 114: 3.0, 115: 2.9, 116: 2.8, 117: 2.7, 118: 2.5, 119: 2.3,
    120: 2.0,
}

# IRS 2024 ordinary income bracket upper edges by filing status.  The top
# 37% bracket is open ended and not listed.
FEDERAL_BRACKETS = {
    "single": [11_600, 47_150, 100_525, 191_950, 243_725, 609_350],
    "joint": [23_200, 94_300, 201_050, 383_900, 487_450, 731_200],
}

FEDERAL_RATES = [0.10, 0.12, 0.22, 0.24, 0.32, 0.35, 0.37]

FEDERAL_STD_DEDUCTION = {"single": 14_600, "joint": 29_200}

# Additional standard deduction for filers 65 and over (per spouse on joint).
OVER_65_ADDITION = {"single": 1_950, "joint": 1_550}

# Provisional income (base, upper) thresholds.  These are statutory and are
# never indexed for inflation.
SS_THRESHOLDS = {"single": (25_000, 34_000), "joint": (32_000, 44_000)}

ACTION_HOLD_FULL = "HOLD_FULL"
ACTION_REFILL_GAINS = "REFILL_GAINS"
ACTION_HOLD_BEAR = "HOLD_BEAR"


def parse_percent(val: str) -> float:
    """Turn operator input such as '3.07%' or '5' into a fraction (0.0307, 0.05)."""
    try:
        pct = float(val.strip().rstrip("%").strip()) / 100
    except ValueError as exc:
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not 0 <= pct <= 1:
        raise ValueError(f"Percentage out of range: {val!r}")
    return pct


def parse_dollars(val: str) -> float:
    """Turn operator input such as '$1,234.50' into 1234.5; negatives are rejected."""
    try:
        amt = float(val.replace("$", "").replace(",", "").strip())
    except ValueError as exc:
        raise ValueError(f"Invalid dollar amount: {val!r}") from exc
    if amt < 0:
        raise ValueError(f"Negative dollar amount: {val!r}")
    return amt


def check_filing_status(filing_status: str) -> str:
    status = filing_status.strip().lower()
    if status not in FILING_STATUSES:
        raise ValueError(f"Unknown filing status: {filing_status}")
    return status


@dataclass(frozen=True)
class EngineConfig:
    """Assumptions and static tables shared by every calculator.

    Built once at startup and handed to each calculation; nothing in this
    module reads these values from anywhere else.
    """

    annual_inflation: float = 0.03
    base_year: int = 2024
    tax_safety_margin: float = 0.15
    number_of_simulations: int = 10_000
    terminal_age: int = 100
    milestone_step: int = 5
    fallback_dividend_yield: float = 0.015
    max_dividend_yield: float = 0.10
    stock_ticker: str = "FSKAX"
    cash_ticker: str = "SPAXX"
    market_cache_seconds: float = 300.0
    fetch_timeout: float = 8.0
    min_cash_months_warning: float = 6.0
    min_dividend_alert: float = 100.0
    log_path: str = "transaction_log.csv"
    historical_returns: Tuple[float, ...] = HISTORICAL_RETURNS
    rmd_table: Mapping[int, float] = field(default_factory=lambda: dict(RMD_TABLE))
    federal_brackets: Mapping[str, List[float]] = field(
        default_factory=lambda: {k: list(v) for k, v in FEDERAL_BRACKETS.items()}
    )
    federal_rates: List[float] = field(default_factory=lambda: list(FEDERAL_RATES))
    federal_std_deduction: Mapping[str, float] = field(
        default_factory=lambda: dict(FEDERAL_STD_DEDUCTION)
    )
    over_65_addition: Mapping[str, float] = field(
        default_factory=lambda: dict(OVER_65_ADDITION)
    )
    ss_thresholds: Mapping[str, Tuple[float, float]] = field(
        default_factory=lambda: dict(SS_THRESHOLDS)
    )

    def __post_init__(self) -> None:
        for status in FILING_STATUSES:
            if len(self.federal_brackets[status]) + 1 != len(self.federal_rates):
                raise ValueError(
                    f"Federal brackets for {status} do not match the configured rates"
                )
        if not self.historical_returns:
            raise ValueError("historical_returns must not be empty")


# Scalar assumptions that may be overridden from config.json
_OVERRIDABLE = {
    f.name
    for f in fields(EngineConfig)
    if f.name
    not in {
        "historical_returns",
        "rmd_table",
        "federal_brackets",
        "federal_rates",
        "federal_std_deduction",
        "over_65_addition",
        "ss_thresholds",
    }
}


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load saved configuration if available."""

    if os.path.exists(path):
        with open(path) as f:
            logger.info("Loading configuration from %s", path)
            return json.load(f)
    return {}


def config_from_dict(data: dict) -> EngineConfig:
    """Build an ``EngineConfig`` from the ``general`` section of a config file."""

    general = data.get("general", {})
    unknown = set(general) - _OVERRIDABLE
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
    return replace(EngineConfig(), **general)


# --- Tax brackets -----------------------------------------------------------


@dataclass(frozen=True)
class TaxBracket:
    threshold: float  # upper edge; math.inf for the top bracket
    rate: float


def bracket_tax(taxable_income: float, brackets: Sequence[TaxBracket]) -> float:
    """Compute tax owed on ``taxable_income`` using marginal brackets."""
    if taxable_income <= 0:
        return 0.0

    tax = 0.0
    previous_threshold = 0.0
    for bracket in brackets:
        tax += (min(taxable_income, bracket.threshold) - previous_threshold) * bracket.rate
        if taxable_income <= bracket.threshold:
            break
        previous_threshold = bracket.threshold
    return tax


def validate_brackets(brackets: Sequence[TaxBracket]) -> List[str]:
    """Return a description of every problem with a bracket schedule."""
    problems = []
    if not brackets:
        return ["no brackets defined"]
    previous = 0.0
    for bracket in brackets:
        if bracket.threshold <= previous:
            problems.append(f"threshold {bracket.threshold} is not above {previous}")
        if not 0 <= bracket.rate < 1:
            problems.append(f"rate {bracket.rate} outside [0, 1)")
        previous = bracket.threshold
    if not math.isinf(brackets[-1].threshold):
        problems.append("top bracket is not open ended")
    return problems


# --- Social Security taxability ---------------------------------------------


def provisional_income(
    withdrawal: float, social_security: float, tax_exempt_interest: float
) -> float:
    return withdrawal + 0.5 * social_security + tax_exempt_interest


def taxable_social_security(
    withdrawal: float,
    social_security: float,
    tax_exempt_interest: float,
    filing_status: str,
    cfg: EngineConfig,
) -> float:
    """
    Federal taxable portion of Social Security benefits.

    Below the base threshold nothing is taxable, between the thresholds half
    of the excess is taxable, and above the upper threshold 85% of the excess
    is added to half of the middle band.  The result never exceeds 85% of
    the benefits received.
    """
    status = check_filing_status(filing_status)
    base, upper = cfg.ss_thresholds[status]
    income = provisional_income(withdrawal, social_security, tax_exempt_interest)

    if income > upper:
        taxable = (upper - base) * 0.50 + (income - upper) * 0.85
    elif income > base:
        taxable = (income - base) * 0.50
    else:
        taxable = 0.0
    return min(taxable, social_security * 0.85)


# --- Required minimum distributions -----------------------------------------


def rmd_start_age(birth_year: int) -> int:
    """Age at which required distributions begin (SECURE 2.0)."""
    return 75 if birth_year >= 1960 else 73


def rmd_factor(age: int, start_age: int, cfg: EngineConfig) -> float:
    """Uniform Lifetime divisor for ``age`` or 0 when no RMD is due."""
    if age < start_age:
        return 0.0
    table = cfg.rmd_table
    if age in table:
        return table[age]
    last_age = max(table)
    return table[last_age] if age >= last_age else 0.0


def required_minimum_distribution(balance: float, factor: float) -> float:
    if factor <= 0 or balance <= 0:
        return 0.0
    return balance / factor


@dataclass(frozen=True)
class AnnualWithdrawalPlan:
    ira_withdrawal: float
    rmd_amount: float
    rmd_factor: float
    planned_spend: float = 0.0

    @property
    def rmd_status(self) -> str:
        """'required' when the RMD forces extra withdrawal, else 'satisfied' or 'not_required'."""
        if self.rmd_amount <= 0:
            return "not_required"
        if self.rmd_amount > self.planned_spend:
            return "required"
        return "satisfied"


def plan_withdrawal(
    planned_spend: float,
    prior_year_balance: float,
    age: int,
    start_age: int,
    cfg: EngineConfig,
) -> AnnualWithdrawalPlan:
    factor = rmd_factor(age, start_age, cfg)
    rmd_amount = required_minimum_distribution(prior_year_balance, factor)
    return AnnualWithdrawalPlan(
        ira_withdrawal=max(planned_spend, rmd_amount),
        rmd_amount=rmd_amount,
        rmd_factor=factor,
        planned_spend=planned_spend,
    )


# --- Federal income tax -----------------------------------------------------


def inflation_index(year: int, cfg: EngineConfig) -> float:
    """Growth factor applied to dollar thresholds since the base tax year."""
    years = max(0, year - cfg.base_year)
    return (1 + cfg.annual_inflation) ** years


def federal_standard_deduction(
    filing_status: str, index_factor: float, cfg: EngineConfig
) -> float:
    # TODO: pass the filer's age and only add OVER_65_ADDITION at 65 and over.
    status = check_filing_status(filing_status)
    addition = cfg.over_65_addition[status]
    if status == "joint":
        addition *= 2
    return (cfg.federal_std_deduction[status] + addition) * index_factor


def federal_brackets(
    filing_status: str, index_factor: float, cfg: EngineConfig
) -> List[TaxBracket]:
    status = check_filing_status(filing_status)
    thresholds = [t * index_factor for t in cfg.federal_brackets[status]]
    thresholds.append(math.inf)
    return [TaxBracket(t, r) for t, r in zip(thresholds, cfg.federal_rates)]


def federal_taxable_income(
    withdrawal: float,
    social_security: float,
    tax_exempt_interest: float,
    filing_status: str,
    year: int,
    cfg: EngineConfig,
) -> float:
    index_factor = inflation_index(year, cfg)
    taxable_ss = taxable_social_security(
        withdrawal, social_security, tax_exempt_interest, filing_status, cfg
    )
    deduction = federal_standard_deduction(filing_status, index_factor, cfg)
    return max(0.0, withdrawal + taxable_ss - deduction)


def federal_tax(
    withdrawal: float,
    social_security: float,
    tax_exempt_interest: float,
    filing_status: str,
    year: int,
    cfg: EngineConfig,
) -> float:
    """
    Federal income tax on an IRA withdrawal plus Social Security.

    Bracket edges and the standard deduction are indexed by inflation from
    ``cfg.base_year``; the Social Security thresholds are not.
    """
    taxable_income = federal_taxable_income(
        withdrawal, social_security, tax_exempt_interest, filing_status, year, cfg
    )
    brackets = federal_brackets(filing_status, inflation_index(year, cfg), cfg)
    return bracket_tax(taxable_income, brackets)


# --- State income tax -------------------------------------------------------


@dataclass(frozen=True)
class NoIncomeTax:
    pass


@dataclass(frozen=True)
class FlatTax:
    rate: float


@dataclass(frozen=True)
class ProgressiveTax:
    brackets: Tuple[TaxBracket, ...]


TaxMethod = Union[NoIncomeTax, FlatTax, ProgressiveTax]


@dataclass(frozen=True)
class StateTaxProfile:
    name: str
    method: TaxMethod
    single_std_deduction: float = 0.0
    joint_std_deduction: float = 0.0
    retirement_exclusion: float = 0.0  # math.inf exempts all retirement income
    social_security_exempt_pct: float = 100.0
    notes: str = ""

    @property
    def has_income_tax(self) -> bool:
        return not isinstance(self.method, NoIncomeTax)

    @property
    def flat_rate(self) -> float:
        return self.method.rate if isinstance(self.method, FlatTax) else 0.0

    @property
    def is_progressive(self) -> bool:
        return isinstance(self.method, ProgressiveTax)

    @property
    def brackets(self) -> Tuple[TaxBracket, ...]:
        return self.method.brackets if isinstance(self.method, ProgressiveTax) else ()

    def standard_deduction(self, filing_status: str) -> float:
        if check_filing_status(filing_status) == "joint":
            return self.joint_std_deduction
        return self.single_std_deduction


def validate_state_profile(profile: StateTaxProfile) -> List[str]:
    """Return configuration defects that would make the profile compute no tax."""
    problems = []
    method = profile.method
    if isinstance(method, FlatTax):
        if not 0 < method.rate < 1:
            problems.append(f"flat rate {method.rate} outside (0, 1)")
    elif isinstance(method, ProgressiveTax):
        problems.extend(validate_brackets(method.brackets))
    if not 0 <= profile.social_security_exempt_pct <= 100:
        problems.append(
            f"Social Security exemption {profile.social_security_exempt_pct}% outside 0-100"
        )
    if profile.single_std_deduction < 0 or profile.joint_std_deduction < 0:
        problems.append("negative standard deduction")
    if profile.retirement_exclusion < 0:
        problems.append("negative retirement exclusion")
    return [f"{profile.name}: {p}" for p in problems]


def state_tax(
    withdrawal: float,
    social_security: float,
    profile: StateTaxProfile,
    filing_status: str,
) -> float:
    """State income tax on an IRA withdrawal plus Social Security."""
    method = profile.method
    if isinstance(method, NoIncomeTax):
        return 0.0

    taxable_ss = social_security * (1 - profile.social_security_exempt_pct / 100.0)
    taxable_withdrawal = withdrawal
    if profile.retirement_exclusion > 0:
        taxable_withdrawal = max(0.0, withdrawal - profile.retirement_exclusion)

    taxable_income = max(
        0.0,
        taxable_withdrawal + taxable_ss - profile.standard_deduction(filing_status),
    )
    if taxable_income <= 0:
        return 0.0

    if isinstance(method, FlatTax) and method.rate > 0:
        return taxable_income * method.rate
    if isinstance(method, ProgressiveTax) and method.brackets:
        return bracket_tax(taxable_income, method.brackets)
    # Misconfigured profile; validate_state_profile reports it.
    return 0.0


@dataclass(frozen=True)
class TaxResult:
    federal: float
    state: float
    gross_income: float
    taxable_social_security: float = 0.0

    @property
    def total(self) -> float:
        return self.federal + self.state

    @property
    def net_income(self) -> float:
        return self.gross_income - self.total

    @property
    def effective_rate(self) -> float:
        if self.gross_income <= 0:
            return 0.0
        return self.total / self.gross_income


# --- Cash buffer glide path -------------------------------------------------


@njit(cache=True)
def target_cash_years(age: int) -> int:
    if age < 75:
        return 3
    if age < 85:
        return 4
    return 5


@njit(cache=True)
def _target_cash_buffer(annual_withdrawal: float, age: int, inflation: float) -> float:
    target = 0.0
    for k in range(target_cash_years(age)):
        target += annual_withdrawal * (1.0 + inflation) ** k
    return target


def target_cash_buffer(annual_withdrawal: float, age: int, cfg: EngineConfig) -> float:
    """Inflation-grown spending for the years of cash the glide path holds at ``age``."""
    return _target_cash_buffer(annual_withdrawal, age, cfg.annual_inflation)


# --- Monte Carlo survival simulation ----------------------------------------


def milestone_ages(start_age: int, cfg: EngineConfig) -> List[int]:
    """Ages reported in the forecast: multiples of the step above ``start_age``."""
    step = cfg.milestone_step
    first = (start_age // step + 1) * step
    return list(range(first, cfg.terminal_age + 1, step))


def effective_dividend_yield(dividend_yield: float, cfg: EngineConfig) -> float:
    if 0 < dividend_yield < cfg.max_dividend_yield:
        return dividend_yield
    return cfg.fallback_dividend_yield


def _rmd_divisor_array(cfg: EngineConfig) -> Tuple[int, np.ndarray]:
    first_age = min(cfg.rmd_table)
    last_age = max(cfg.rmd_table)
    divisors = np.zeros(last_age - first_age + 1, dtype=np.float64)
    for age, factor in cfg.rmd_table.items():
        divisors[age - first_age] = factor
    return first_age, divisors


@njit(cache=True)
def _rmd_factor_jit(age: int, start_age: int, first_age: int, divisors: np.ndarray) -> float:
    if age < start_age:
        return 0.0
    idx = age - first_age
    if idx >= len(divisors):
        return divisors[-1]
    if idx < 0:
        return 0.0
    return divisors[idx]


@njit(cache=True)
def _advance_year(
    stocks: float,
    cash: float,
    withdrawal: float,
    age: int,
    rmd_start_age: int,
    total_return: float,
    dividend_yield: float,
    inflation: float,
    rmd_first_age: int,
    rmd_divisors: np.ndarray,
) -> Tuple[float, float, bool]:
    """
    One simulated year: take the withdrawal (never less than the RMD) from
    cash first, then apply the market.  Returns ``(stocks, cash, solvent)``;
    balances are left as they were after the withdrawal when insolvent.
    """
    factor = _rmd_factor_jit(age, rmd_start_age, rmd_first_age, rmd_divisors)
    rmd_amount = (stocks + cash) / factor if factor > 0 else 0.0
    actual_withdrawal = max(withdrawal, rmd_amount)
    target_cash = _target_cash_buffer(actual_withdrawal, age, inflation)

    if cash >= actual_withdrawal:
        cash -= actual_withdrawal
    else:
        stocks -= actual_withdrawal - cash
        cash = 0.0

    if stocks + cash <= 0:
        return stocks, cash, False

    # Price return stays with the stock; dividends are paid into cash
    stocks *= 1.0 + total_return - dividend_yield
    cash += stocks * dividend_yield

    # Only sell stock to refill cash in an up year
    if total_return > 0 and cash < target_cash:
        to_sell = min(stocks, target_cash - cash)
        stocks -= to_sell
        cash += to_sell

    return stocks, cash, True


@njit(cache=True)
def _run_trajectory(
    start_stock: float,
    start_cash: float,
    start_withdrawal: float,
    start_age: int,
    rmd_start_age: int,
    terminal_age: int,
    dividend_yield: float,
    inflation: float,
    hist_index: int,
    historical_returns: np.ndarray,
    rmd_first_age: int,
    rmd_divisors: np.ndarray,
    milestones: np.ndarray,
    alive: np.ndarray,
) -> None:
    """Evolve one portfolio to ``terminal_age``, flagging milestones reached solvent."""
    stocks = start_stock
    cash = start_cash
    withdrawal = start_withdrawal
    n_returns = len(historical_returns)

    for age in range(start_age, terminal_age + 1):
        stocks, cash, solvent = _advance_year(
            stocks,
            cash,
            withdrawal,
            age,
            rmd_start_age,
            historical_returns[hist_index],
            dividend_yield,
            inflation,
            rmd_first_age,
            rmd_divisors,
        )
        if not solvent:
            break

        for m in range(len(milestones)):
            if milestones[m] == age:
                alive[m] = 1

        # Walk the series in order, wrapping back to the oldest year
        hist_index = (hist_index + 1) % n_returns
        withdrawal *= 1.0 + inflation


@njit(cache=True, parallel=True)
def _simulate_parallel(
    start_stock: float,
    start_cash: float,
    start_withdrawal: float,
    start_age: int,
    rmd_start_age: int,
    terminal_age: int,
    dividend_yield: float,
    inflation: float,
    start_indices: np.ndarray,
    historical_returns: np.ndarray,
    rmd_first_age: int,
    rmd_divisors: np.ndarray,
    milestones: np.ndarray,
) -> np.ndarray:
    """
    Parallelized trajectory kernel. Returns an (n_sims, n_milestones) array
    with 1 where the trajectory was still solvent at that milestone.
    """
    n_sims = len(start_indices)
    alive = np.zeros((n_sims, len(milestones)), dtype=np.int32)
    for sim in prange(n_sims):
        _run_trajectory(
            start_stock,
            start_cash,
            start_withdrawal,
            start_age,
            rmd_start_age,
            terminal_age,
            dividend_yield,
            inflation,
            start_indices[sim],
            historical_returns,
            rmd_first_age,
            rmd_divisors,
            milestones,
            alive[sim],
        )
    return alive


@dataclass(frozen=True)
class SurvivalForecast:
    """Percentage of simulated portfolios still solvent at each milestone age."""

    probabilities: Dict[int, float]
    simulations: int

    def get(self, age: int, default: float = 100.0) -> float:
        return self.probabilities.get(age, default)

    def items(self):
        return sorted(self.probabilities.items())

    def __len__(self) -> int:
        return len(self.probabilities)

    @staticmethod
    def status_label(pct: float) -> str:
        if pct > 85:
            return "Safe"
        if pct > 50:
            return "Caution"
        return "RISK"

    def assessment(self) -> str:
        at_80 = self.get(80)
        at_90 = self.get(90)
        if at_80 > 90 and at_90 > 75:
            return "strong"
        if at_80 > 70 and at_90 > 50:
            return "adequate"
        return "high_risk"


def simulate(
    start_stock: float,
    start_cash: float,
    start_withdrawal: float,
    start_age: int,
    rmd_start_age: int,
    dividend_yield: float,
    cfg: EngineConfig,
    seed: Optional[int] = None,
) -> SurvivalForecast:
    """Run the Monte Carlo survival simulation over the historical return series."""

    n_sims = cfg.number_of_simulations
    milestones = milestone_ages(start_age, cfg)
    if not milestones:
        return SurvivalForecast({}, n_sims)

    returns = np.asarray(cfg.historical_returns, dtype=np.float64)
    rng = np.random.default_rng(seed)
    # Each trajectory walks the series in order from its own random start year
    start_indices = rng.integers(0, len(returns), size=n_sims)
    rmd_first_age, rmd_divisors = _rmd_divisor_array(cfg)
    div_yield = effective_dividend_yield(dividend_yield, cfg)

    logger.info(
        "Simulating %d trajectories from age %d to %d (dividend yield %.4f)",
        n_sims,
        start_age,
        cfg.terminal_age,
        div_yield,
    )
    alive = _simulate_parallel(
        start_stock=float(start_stock),
        start_cash=float(start_cash),
        start_withdrawal=float(start_withdrawal),
        start_age=int(start_age),
        rmd_start_age=int(rmd_start_age),
        terminal_age=int(cfg.terminal_age),
        dividend_yield=div_yield,
        inflation=cfg.annual_inflation,
        start_indices=start_indices,
        historical_returns=returns,
        rmd_first_age=rmd_first_age,
        rmd_divisors=rmd_divisors,
        milestones=np.asarray(milestones, dtype=np.int64),
    )
    counts = alive.sum(axis=0)
    probabilities = {
        age: float(count) / n_sims * 100.0 for age, count in zip(milestones, counts)
    }
    return SurvivalForecast(probabilities, n_sims)


# --- Analysis ---------------------------------------------------------------


@dataclass(frozen=True)
class RetirementProfile:
    label: str
    birth_year: int
    age: int
    filing_status: str
    monthly_need: float
    social_security: float
    cash_balance: float
    stock_balance: float
    tax_exempt_interest: float = 0.0
    prior_year_ira_balance: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "filing_status", check_filing_status(self.filing_status))

    @property
    def annual_need(self) -> float:
        return self.monthly_need * 12

    @property
    def total_portfolio(self) -> float:
        return self.cash_balance + self.stock_balance

    @property
    def rmd_start_age(self) -> int:
        return rmd_start_age(self.birth_year)


def apply_emergency_expense(cash_balance: float, expense: float) -> float:
    """Cash left after a one-time expense paid today."""
    return cash_balance - max(0.0, expense)


def age_warnings(age: int) -> List[str]:
    if age < 18 or age > 120:
        return [f"Age {age} seems unusual."]
    return []


def balance_warnings(
    age: int,
    cash_balance: float,
    stock_balance: float,
    prior_year_balance: float = 0.0,
    emergency_expense: float = 0.0,
) -> List[str]:
    warnings = []
    current_total = cash_balance + stock_balance
    if age >= 72 and prior_year_balance > 0:
        pct_diff = abs(current_total - prior_year_balance) / prior_year_balance
        if pct_diff > 0.30:
            warnings.append(
                f"Current total (${current_total:,.0f}) differs {pct_diff:.0%} "
                f"from prior year (${prior_year_balance:,.0f})."
            )

    if stock_balance > 5_000_000 or cash_balance > 2_000_000:
        warnings.append(
            f"Large balance: stock ${stock_balance:,.0f}, cash ${cash_balance:,.0f}."
        )

    if emergency_expense > cash_balance:
        warnings.append(
            f"Emergency expense (${emergency_expense:,.0f}) exceeds cash "
            f"(${cash_balance:,.0f})."
        )
    return warnings


def months_of_cash(cash_balance: float, annual_withdrawal: float) -> float:
    if annual_withdrawal <= 0:
        return 999.0
    return cash_balance / (annual_withdrawal / 12)


def recommend_action(cash_balance: float, target_cash: float, market_return: float) -> str:
    """Hold when the buffer is full, refill it from gains, never sell after a down year."""
    if cash_balance >= target_cash:
        return ACTION_HOLD_FULL
    if market_return > 0:
        return ACTION_REFILL_GAINS
    return ACTION_HOLD_BEAR


def estimate_taxes(
    profile: RetirementProfile,
    withdrawal: float,
    state_profile: StateTaxProfile,
    year: int,
    cfg: EngineConfig,
) -> TaxResult:
    fed = federal_tax(
        withdrawal,
        profile.social_security,
        profile.tax_exempt_interest,
        profile.filing_status,
        year,
        cfg,
    )
    st = state_tax(withdrawal, profile.social_security, state_profile, profile.filing_status)
    taxable_ss = taxable_social_security(
        withdrawal,
        profile.social_security,
        profile.tax_exempt_interest,
        profile.filing_status,
        cfg,
    )
    return TaxResult(
        federal=fed,
        state=st,
        gross_income=withdrawal + profile.social_security,
        taxable_social_security=taxable_ss,
    )


@dataclass(frozen=True)
class AnalysisResult:
    profile: RetirementProfile
    state_name: str
    year: int
    plan: AnnualWithdrawalPlan
    taxes: TaxResult
    target_years: int
    target_cash: float
    cash_months: float
    forecast: SurvivalForecast
    action: str
    market_return: float
    dividend_yield: float

    @property
    def cash_deficit(self) -> float:
        return self.target_cash - self.profile.cash_balance

    @property
    def estimated_dividends(self) -> float:
        return self.profile.stock_balance * self.dividend_yield


def analyze(
    profile: RetirementProfile,
    state_profile: StateTaxProfile,
    market,
    year: int,
    cfg: EngineConfig,
    seed: Optional[int] = None,
) -> AnalysisResult:
    """
    Run the full projection for one person.

    ``market`` is any object with ``one_year_return`` and ``dividend_yield``
    attributes.  The simulated withdrawal is grossed up by the configured tax
    safety margin.
    """
    start_age = profile.rmd_start_age
    plan = plan_withdrawal(
        profile.annual_need, profile.prior_year_ira_balance, profile.age, start_age, cfg
    )
    taxes = estimate_taxes(profile, plan.ira_withdrawal, state_profile, year, cfg)
    target_cash = target_cash_buffer(plan.ira_withdrawal, profile.age, cfg)

    forecast = simulate(
        profile.stock_balance,
        profile.cash_balance,
        plan.ira_withdrawal * (1 + cfg.tax_safety_margin),
        profile.age,
        start_age,
        market.dividend_yield,
        cfg,
        seed=seed,
    )

    return AnalysisResult(
        profile=profile,
        state_name=state_profile.name,
        year=year,
        plan=plan,
        taxes=taxes,
        target_years=int(target_cash_years(profile.age)),
        target_cash=target_cash,
        cash_months=months_of_cash(profile.cash_balance, plan.ira_withdrawal),
        forecast=forecast,
        action=recommend_action(profile.cash_balance, target_cash, market.one_year_return),
        market_return=market.one_year_return,
        dividend_yield=market.dividend_yield,
    )
