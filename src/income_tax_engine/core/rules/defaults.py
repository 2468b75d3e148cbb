"""Seed rule set — Polish CIT / PIT parameters.

Every entry carries its legal basis. When a statutory value changes, add a
new version with a later effective_from (see RuleCatalog.add); never edit
an entry whose period has begun.

Rate codes used by the engine:
  RATE                       flat CIT / PIT rate
  DISTRIBUTION_RATE[_LARGE]  Estonian CIT on distributed profit
  SCALE                      progressive PIT bracket set + allowance
  <ACTIVITY>                 lump-sum (ryczałt) rate per activity code
  LOSS_CAP                   share of income a loss may offset per year
  LOSS_CARRY_FORWARD_YEARS   years a loss stays usable after its origin year
  EXPENSE_POLICY             non-deductible / mixed-use expense categories
  CHILD_RELIEF               per-child relief schedule (progressive PIT)
  HEALTH_DEDUCTION_CAP       yearly cap on health contribution deduction (flat PIT)
  SOLIDARITY_THRESHOLD/RATE  4% surcharge on income above 1M (CIT and PIT)
"""

from datetime import date
from decimal import Decimal

from ..models import (
    Bracket,
    BracketSet,
    CategoryPolicy,
    ExpensePolicy,
    Regime,
    RuleEntry,
    RuleKind,
)

D = Decimal

#: Regimes taxing income (revenue − costs), where losses and expense rules apply
INCOME_REGIMES = (
    Regime.CORPORATE_STANDARD,
    Regime.CORPORATE_SMALL,
    Regime.PERSONAL_PROGRESSIVE,
    Regime.PERSONAL_FLAT,
)

#: Ryczałt rates, Art. 12 ustawy o zryczałtowanym podatku dochodowym
LUMP_SUM_RATES: dict[str, Decimal] = {
    "IT_SERVICES": D("0.12"),
    "LIBERAL_PROFESSIONS": D("0.17"),
    "HEALTH_SERVICES": D("0.14"),
    "TRADE": D("0.03"),
    "MANUFACTURING": D("0.055"),
    "CONSTRUCTION": D("0.055"),
    "RENTAL": D("0.085"),
    "OTHER_SERVICES": D("0.085"),
}

#: The CIT surcharge is a calculation policy, not a statutory levy; close its
#: entries to switch it off
CIT_SURCHARGE_BASIS = "Polityka kalkulacji: dopłata 4% od dochodu CIT po stratach powyżej 1 mln zł"

#: Yearly cap on health contribution deducted from flat-rate PIT, Art. 30c ust. 2 ustawy o PIT
HEALTH_DEDUCTION_CAPS = [
    (date(2022, 7, 1), date(2022, 12, 31), D("8700")),
    (date(2023, 1, 1), date(2023, 12, 31), D("10200")),
    (date(2024, 1, 1), date(2024, 12, 31), D("11600")),
    (date(2025, 1, 1), None, D("12900")),
]


def _pit_scale(first_rate: Decimal) -> BracketSet:
    threshold = D("120000")
    allowance = D("30000")
    return BracketSet(
        brackets=(
            Bracket("I próg", D("0"), threshold, first_rate),
            Bracket(
                "II próg", threshold, None, D("0.32"),
                base_amount=((threshold - allowance) * first_rate).quantize(D("0.01")),
            ),
        ),
        allowance=allowance,
    )


def _expense_policy(regime: Regime) -> ExpensePolicy:
    if regime.is_corporate:
        art = "ustawy o CIT"
        representation, vehicle, fines = "Art. 16 ust. 1 pkt 28", "Art. 16 ust. 1 pkt 51", "Art. 16 ust. 1 pkt 18"
    else:
        art = "ustawy o PIT"
        representation, vehicle, fines = "Art. 23 ust. 1 pkt 23", "Art. 23 ust. 1 pkt 46a", "Art. 23 ust. 1 pkt 15"
    return ExpensePolicy(categories={
        "representation": CategoryPolicy(D("0"), f"{representation} {art}"),
        "fines": CategoryPolicy(D("0"), f"{fines} {art}"),
        "vehicle": CategoryPolicy(D("0.75"), f"{vehicle} {art}"),
    })


def default_rules() -> list[RuleEntry]:
    rules = [
        # CIT
        RuleEntry(Regime.CORPORATE_STANDARD, "RATE", RuleKind.RATE, D("0.19"),
                  date(2004, 1, 1), legal_reference="Art. 19 ust. 1 pkt 1 ustawy o CIT",
                  description="Podstawowa stawka CIT"),
        RuleEntry(Regime.CORPORATE_SMALL, "RATE", RuleKind.RATE, D("0.15"),
                  date(2017, 1, 1), date(2018, 12, 31),
                  legal_reference="Art. 19 ust. 1 pkt 2 ustawy o CIT",
                  description="Obniżona stawka CIT (mali podatnicy)"),
        RuleEntry(Regime.CORPORATE_SMALL, "RATE", RuleKind.RATE, D("0.09"),
                  date(2019, 1, 1), legal_reference="Art. 19 ust. 1 pkt 2 ustawy o CIT",
                  description="Obniżona stawka CIT (mali podatnicy)"),
        RuleEntry(Regime.CORPORATE_ESTONIAN, "DISTRIBUTION_RATE", RuleKind.RATE, D("0.10"),
                  date(2022, 1, 1), legal_reference="Art. 28o ust. 1 pkt 1 ustawy o CIT",
                  description="Ryczałt od dochodów spółek — mały podatnik"),
        RuleEntry(Regime.CORPORATE_ESTONIAN, "DISTRIBUTION_RATE_LARGE", RuleKind.RATE, D("0.20"),
                  date(2022, 1, 1), legal_reference="Art. 28o ust. 1 pkt 2 ustawy o CIT",
                  description="Ryczałt od dochodów spółek — pozostali podatnicy"),
        # PIT: skala podatkowa
        RuleEntry(Regime.PERSONAL_PROGRESSIVE, "SCALE", RuleKind.SCALE, _pit_scale(D("0.17")),
                  date(2022, 1, 1), date(2022, 6, 30),
                  legal_reference="Art. 27 ust. 1 ustawy o PIT", description="Skala 17% / 32%"),
        RuleEntry(Regime.PERSONAL_PROGRESSIVE, "SCALE", RuleKind.SCALE, _pit_scale(D("0.12")),
                  date(2022, 7, 1), legal_reference="Art. 27 ust. 1 ustawy o PIT",
                  description="Skala 12% / 32%"),
        RuleEntry(Regime.PERSONAL_PROGRESSIVE, "CHILD_RELIEF", RuleKind.SCHEDULE,
                  (D("1112.04"), D("1112.04"), D("2000.04"), D("2700.00")),
                  date(2022, 1, 1), legal_reference="Art. 27f ustawy o PIT",
                  description="Ulga na dzieci (czwarte i kolejne — ostatnia kwota)"),
        # PIT: liniowy
        RuleEntry(Regime.PERSONAL_FLAT, "RATE", RuleKind.RATE, D("0.19"),
                  date(2004, 1, 1), legal_reference="Art. 30c ust. 1 ustawy o PIT",
                  description="Podatek liniowy"),
    ]

    for start, end, cap in HEALTH_DEDUCTION_CAPS:
        rules.append(RuleEntry(
            Regime.PERSONAL_FLAT, "HEALTH_DEDUCTION_CAP", RuleKind.AMOUNT, cap, start, end,
            legal_reference="Art. 30c ust. 2 ustawy o PIT",
            description="Limit odliczenia składki zdrowotnej",
        ))

    for regime in (Regime.PERSONAL_PROGRESSIVE, Regime.PERSONAL_FLAT):
        rules.append(RuleEntry(
            regime, "SOLIDARITY_THRESHOLD", RuleKind.AMOUNT, D("1000000"), date(2019, 1, 1),
            legal_reference="Art. 30h ust. 1 ustawy o PIT", description="Próg daniny solidarnościowej",
        ))
        rules.append(RuleEntry(
            regime, "SOLIDARITY_RATE", RuleKind.RATE, D("0.04"), date(2019, 1, 1),
            legal_reference="Art. 30h ust. 1 ustawy o PIT", description="Danina solidarnościowa",
        ))

    # CIT surcharge on income after losses; Estonian CIT taxes distributions instead
    for regime in (Regime.CORPORATE_STANDARD, Regime.CORPORATE_SMALL):
        rules.append(RuleEntry(
            regime, "SOLIDARITY_THRESHOLD", RuleKind.AMOUNT, D("1000000"), date(2019, 1, 1),
            legal_reference=CIT_SURCHARGE_BASIS,
            description="Próg dopłaty solidarnościowej od dochodu CIT",
        ))
        rules.append(RuleEntry(
            regime, "SOLIDARITY_RATE", RuleKind.RATE, D("0.04"), date(2019, 1, 1),
            legal_reference=CIT_SURCHARGE_BASIS,
            description="Dopłata solidarnościowa od dochodu CIT powyżej progu",
        ))

    for code, rate in LUMP_SUM_RATES.items():
        rules.append(RuleEntry(
            Regime.PERSONAL_LUMP_SUM, code, RuleKind.RATE, rate, date(2022, 1, 1),
            legal_reference="Art. 12 ust. 1 ustawy o zryczałtowanym podatku dochodowym",
            description=f"Ryczałt — {code.lower().replace('_', ' ')}",
        ))

    for regime in INCOME_REGIMES:
        law = "Art. 7 ust. 5 ustawy o CIT" if regime.is_corporate else "Art. 9 ust. 3 ustawy o PIT"
        rules.append(RuleEntry(
            regime, "LOSS_CAP", RuleKind.RATE, D("0.50"), date(2004, 1, 1),
            legal_reference=law, description="Maksymalne obniżenie dochodu o stratę w roku",
        ))
        rules.append(RuleEntry(
            regime, "LOSS_CARRY_FORWARD_YEARS", RuleKind.AMOUNT, D("5"), date(2004, 1, 1),
            legal_reference=law, description="Okres rozliczenia straty (lata)",
        ))
        rules.append(RuleEntry(
            regime, "EXPENSE_POLICY", RuleKind.EXPENSE_POLICY, _expense_policy(regime),
            date(2019, 1, 1), legal_reference="Koszty niestanowiące kosztów uzyskania przychodu",
            description="Wydatki niepodlegające odliczeniu i mieszane",
        ))

    return rules
