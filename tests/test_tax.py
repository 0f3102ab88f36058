import math

import pytest

from core import (
    EngineConfig,
    TaxBracket,
    bracket_tax,
    federal_brackets,
    federal_standard_deduction,
    federal_tax,
    federal_taxable_income,
    inflation_index,
    taxable_social_security,
    validate_brackets,
)


CFG = EngineConfig()


@pytest.mark.parametrize(
    "status, income, expected",
    [
        # Single filer cases
        ("single", 0, 0.0),
        ("single", 11_600, 1_160.0),
        ("single", 11_601, 1_160.12),
        ("single", 47_150, 5_426.0),
        ("single", 47_151, 5_426.22),
        ("single", 100_525, 17_168.5),
        ("single", 100_526, 17_168.74),
        ("single", 191_950, 39_110.5),
        ("single", 191_951, 39_110.82),
        ("single", 243_725, 55_678.5),
        ("single", 243_726, 55_678.85),
        ("single", 609_350, 183_647.25),
        ("single", 609_351, 183_647.62),
        # Married filing jointly cases
        ("joint", 0, 0.0),
        ("joint", 23_200, 2_320.0),
        ("joint", 23_201, 2_320.12),
        ("joint", 94_300, 10_852.0),
        ("joint", 94_301, 10_852.22),
        ("joint", 201_050, 34_337.0),
        ("joint", 201_051, 34_337.24),
        ("joint", 383_900, 78_221.0),
        ("joint", 383_901, 78_221.32),
        ("joint", 487_450, 111_357.0),
        ("joint", 487_451, 111_357.35),
        ("joint", 731_200, 196_669.5),
        ("joint", 731_201, 196_669.87),
    ],
)
def test_bracket_tax_on_federal_schedule(status, income, expected):
    brackets = federal_brackets(status, 1.0, CFG)
    assert bracket_tax(income, brackets) == pytest.approx(expected)


def test_bracket_tax_negative_income_is_zero():
    assert bracket_tax(-5_000, federal_brackets("single", 1.0, CFG)) == 0.0


def test_bracket_tax_equals_sum_of_bracket_contributions():
    brackets = [TaxBracket(10_000, 0.1), TaxBracket(40_000, 0.2), TaxBracket(math.inf, 0.3)]
    income = 55_000
    expected = 10_000 * 0.1 + 30_000 * 0.2 + 15_000 * 0.3
    assert bracket_tax(income, brackets) == pytest.approx(expected)


@pytest.mark.parametrize("status", ["single", "joint"])
def test_bracket_tax_monotonic_and_continuous(status):
    brackets = federal_brackets(status, 1.0, CFG)
    step = 997.0
    previous = 0.0
    for i in range(1, 1_000):
        tax = bracket_tax(i * step, brackets)
        assert tax >= previous
        # no jump larger than the top marginal rate allows
        assert tax - previous <= step * 0.37 + 1e-6
        previous = tax


def test_federal_brackets_are_valid_and_indexed():
    brackets = federal_brackets("joint", 1.5, CFG)
    assert validate_brackets(brackets) == []
    assert brackets[0].threshold == pytest.approx(23_200 * 1.5)
    assert math.isinf(brackets[-1].threshold)
    assert [b.rate for b in brackets] == [0.10, 0.12, 0.22, 0.24, 0.32, 0.35, 0.37]


def test_validate_brackets_flags_bad_schedules():
    assert validate_brackets([]) == ["no brackets defined"]
    problems = validate_brackets([TaxBracket(20_000, 0.1), TaxBracket(10_000, 1.2)])
    assert len(problems) == 3


@pytest.mark.parametrize(
    "status, withdrawal, ss, exempt, expected",
    [
        ("single", 20_000, 20_000, 0, 2_500.0),
        ("single", 20_000, 20_000, 4_000, 4_500.0),
        ("single", 10_000, 20_000, 0, 0.0),
        ("single", 100_000, 20_000, 0, 17_000.0),
        ("joint", 10_000, 20_000, 0, 0.0),
        ("joint", 30_000, 20_000, 0, 4_000.0),
        ("joint", 50_000, 30_000, 0, 23_850.0),
        ("joint", 40_000, 0, 0, 0.0),
    ],
)
def test_taxable_social_security(status, withdrawal, ss, exempt, expected):
    assert taxable_social_security(withdrawal, ss, exempt, status, CFG) == pytest.approx(expected)


def test_social_security_thresholds_not_indexed():
    # Provisional income of 30,000 sits between the single thresholds in any year
    taxable_ss = taxable_social_security(20_000, 20_000, 0, "single", CFG)
    deduction = federal_standard_deduction("single", inflation_index(2034, CFG), CFG)
    assert federal_taxable_income(20_000, 20_000, 0, "single", 2034, CFG) == pytest.approx(
        max(0.0, 20_000 + taxable_ss - deduction)
    )
    assert taxable_ss == pytest.approx(2_500.0)


def test_inflation_index_floors_at_base_year():
    assert inflation_index(2020, CFG) == 1.0
    assert inflation_index(2024, CFG) == 1.0
    assert inflation_index(2026, CFG) == pytest.approx(1.0609)


@pytest.mark.parametrize(
    "status, expected",
    [("single", 14_600 + 1_950), ("joint", 29_200 + 2 * 1_550)],
)
def test_standard_deduction_includes_over_65_addition(status, expected):
    assert federal_standard_deduction(status, 1.0, CFG) == pytest.approx(expected)


def test_federal_tax_joint_base_year():
    # 40,000 - 32,300 deduction leaves 7,700 in the 10% bracket
    assert federal_tax(40_000, 0, 0, "joint", 2024, CFG) == pytest.approx(770.0)


def test_federal_tax_single_base_year():
    taxable = 40_000 - 16_550
    expected = 11_600 * 0.10 + (taxable - 11_600) * 0.12
    assert federal_tax(40_000, 0, 0, "single", 2024, CFG) == pytest.approx(expected)


def test_federal_tax_indexed_year():
    factor = 1.03 ** 2
    taxable = 40_000 - 32_300 * factor
    assert federal_tax(40_000, 0, 0, "joint", 2026, CFG) == pytest.approx(taxable * 0.10)


def test_federal_tax_before_base_year_matches_base_year():
    assert federal_tax(90_000, 30_000, 0, "joint", 2019, CFG) == pytest.approx(
        federal_tax(90_000, 30_000, 0, "joint", 2024, CFG)
    )


def test_federal_tax_below_deduction_is_zero():
    assert federal_tax(10_000, 15_000, 0, "single", 2024, CFG) == 0.0


def test_unknown_filing_status_rejected():
    with pytest.raises(ValueError):
        federal_tax(40_000, 0, 0, "head_of_household", 2024, CFG)
