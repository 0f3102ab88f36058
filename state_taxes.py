"""State income tax profiles (2026 projected) and jurisdiction lookup."""

from __future__ import annotations

import logging
import math
from typing import Dict, Mapping, Optional

from core import (
    FlatTax,
    NoIncomeTax,
    ProgressiveTax,
    StateTaxProfile,
    TaxBracket,
    check_filing_status,
)


logger = logging.getLogger(__name__)


NO_INCOME_TAX_STATES = [
    "Alaska",
    "Florida",
    "Nevada",
    "New Hampshire",
    "South Dakota",
    "Tennessee",
    "Texas",
    "Washington",
    "Wyoming",
]

STATE_ABBREVIATIONS = {
    "MA": "Massachusetts",
    "CA": "California",
    "NY": "New York",
    "FL": "Florida",
    "TX": "Texas",
    "PA": "Pennsylvania",
    "NC": "North Carolina",
    "AZ": "Arizona",
    "OR": "Oregon",
    "CO": "Colorado",
    "CT": "Connecticut",
    "WA": "Washington",
    "NV": "Nevada",
    "TN": "Tennessee",
    "NH": "New Hampshire",
    "AK": "Alaska",
    "SD": "South Dakota",
    "WY": "Wyoming",
}


def _brackets(*pairs) -> ProgressiveTax:
    """Build a progressive schedule from (upper edge, rate) pairs; ``None`` marks the top."""
    return ProgressiveTax(
        tuple(TaxBracket(math.inf if edge is None else edge, rate) for edge, rate in pairs)
    )


def build_state_database() -> Dict[str, StateTaxProfile]:
    """Return the static profile table keyed by full state name."""

    database = {
        name: StateTaxProfile(
            name=name,
            method=NoIncomeTax(),
            social_security_exempt_pct=100,
            notes="No state income tax",
        )
        for name in NO_INCOME_TAX_STATES
    }

    profiles = [
        # No standard deduction; MA uses personal exemptions instead
        StateTaxProfile(
            name="Massachusetts",
            method=FlatTax(0.05),
            notes="Flat 5.0% tax, Social Security exempt",
        ),
        StateTaxProfile(
            name="California",
            method=_brackets(
                (10_412, 0.01),
                (24_684, 0.02),
                (38_959, 0.04),
                (54_081, 0.06),
                (68_350, 0.08),
                (349_137, 0.093),
                (418_961, 0.103),
                (698_271, 0.113),
                (None, 0.123),
            ),
            single_std_deduction=5_363,
            joint_std_deduction=10_726,
            notes="Progressive rates, SS exempt",
        ),
        StateTaxProfile(
            name="New York",
            method=_brackets(
                (8_500, 0.04),
                (11_700, 0.045),
                (13_900, 0.0525),
                (80_650, 0.055),
                (215_400, 0.06),
                (1_077_550, 0.0685),
                (5_000_000, 0.0965),
                (25_000_000, 0.103),
                (None, 0.109),
            ),
            single_std_deduction=8_000,
            joint_std_deduction=16_050,
            notes="Progressive rates, SS exempt",
        ),
        StateTaxProfile(
            name="Pennsylvania",
            method=FlatTax(0.0307),
            retirement_exclusion=math.inf,
            notes="Flat 3.07%, retirement income and SS exempt",
        ),
        StateTaxProfile(
            name="North Carolina",
            method=FlatTax(0.045),
            single_std_deduction=12_750,
            joint_std_deduction=25_500,
            notes="Flat 4.5%, SS exempt",
        ),
        StateTaxProfile(
            name="Arizona",
            method=FlatTax(0.025),
            single_std_deduction=13_850,
            joint_std_deduction=27_700,
            notes="Flat 2.5%, SS exempt",
        ),
        StateTaxProfile(
            name="Oregon",
            method=_brackets(
                (4_050, 0.0475),
                (10_200, 0.0675),
                (125_000, 0.0875),
                (None, 0.099),
            ),
            single_std_deduction=2_605,
            joint_std_deduction=5_210,
            notes="Progressive rates, SS exempt",
        ),
        # Pension exclusion applies to filers 65 and over
        StateTaxProfile(
            name="Colorado",
            method=FlatTax(0.044),
            retirement_exclusion=24_000,
            notes="Flat 4.4%, SS exempt, pension exclusion for 65+",
        ),
        # SS exemption only holds below $75k (single) / $100k (joint) AGI
        StateTaxProfile(
            name="Connecticut",
            method=_brackets(
                (10_000, 0.03),
                (50_000, 0.05),
                (100_000, 0.055),
                (200_000, 0.06),
                (250_000, 0.065),
                (500_000, 0.069),
                (None, 0.0699),
            ),
            notes="Progressive, SS exempt for lower incomes",
        ),
    ]
    for profile in profiles:
        database[profile.name] = profile
    return database


def lookup_state(
    name: str,
    database: Mapping[str, StateTaxProfile],
    abbreviations: Mapping[str, str] = STATE_ABBREVIATIONS,
) -> Optional[StateTaxProfile]:
    """Find a profile by full name or two-letter abbreviation, ignoring case."""
    key = name.strip().lower()
    if not key:
        return None
    by_name = {n.lower(): p for n, p in database.items()}
    if key in by_name:
        return by_name[key]
    full_name = {a.lower(): n for a, n in abbreviations.items()}.get(key)
    if full_name is not None:
        return by_name.get(full_name.lower())
    logger.debug("No tax profile for %r", name)
    return None


def custom_state_profile(
    name: str,
    has_income_tax: bool,
    filing_status: str,
    flat_rate: float = 0.0,
    deduction: float = 0.0,
    social_security_taxed: bool = False,
) -> StateTaxProfile:
    """Flat-rate profile for a jurisdiction missing from the table."""
    if not has_income_tax:
        return StateTaxProfile(name=name, method=NoIncomeTax(), notes="Custom entry")

    status = check_filing_status(filing_status)
    return StateTaxProfile(
        name=name,
        method=FlatTax(flat_rate),
        single_std_deduction=deduction if status == "single" else 0.0,
        joint_std_deduction=deduction if status == "joint" else 0.0,
        social_security_exempt_pct=0 if social_security_taxed else 100,
        notes="Custom entry",
    )


def describe_state(profile: StateTaxProfile, filing_status: str) -> list[str]:
    """Summary lines shown when a profile is loaded."""
    lines = []
    if not profile.has_income_tax:
        lines.append("No state income tax")
    elif profile.flat_rate > 0:
        lines.append(f"Flat Rate: {profile.flat_rate:.2%}")
    elif profile.is_progressive and profile.brackets:
        lines.append(
            f"Progressive brackets: {profile.brackets[0].rate:.1%} - "
            f"{profile.brackets[-1].rate:.2%}"
        )

    deduction = profile.standard_deduction(filing_status)
    if deduction > 0:
        lines.append(f"Standard Deduction ({filing_status.title()}): ${deduction:,.0f}")

    if profile.social_security_exempt_pct == 100:
        lines.append("Social Security: Fully Exempt")
    elif profile.social_security_exempt_pct > 0:
        lines.append(f"Social Security: {profile.social_security_exempt_pct:g}% Exempt")

    if math.isinf(profile.retirement_exclusion):
        lines.append("Retirement Income: Fully Exempt")
    elif profile.retirement_exclusion > 0:
        lines.append(f"Retirement Exclusion: ${profile.retirement_exclusion:,.0f}")

    if profile.notes:
        lines.append(f"Note: {profile.notes}")
    return lines
