"""
Margin and VAT calculations.

Pure functions, no I/O. Every monetary result is a Decimal rounded to two
places with banker's rounding (ROUND_HALF_EVEN).

Rules:
- gross_margin = ex VAT sale - buy price - shipping - card fees - direct costs
- commissionable_margin = gross_margin - introducer commission
- Standard rated sales: inc VAT = ex VAT x 1.20
- Export and margin scheme sales are zero rated: inc VAT = ex VAT
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Optional, Union

from ledgersync.errors import DataIntegrityWarning, IntegrityWarningKind, ValidationError

Number = Union[Decimal, int, float, str, None]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
STANDARD_RATE = Decimal("0.20")
VAT_TOLERANCE = Decimal("1.00")

TAX_STANDARD = "OUTPUT2"
TAX_ZERO = "ZERORATEDOUTPUT"


def to_money(value: Number) -> Decimal:
    """Coerce any numeric input to a 2dp Decimal. None counts as zero."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except ArithmeticError as e:
        raise ValidationError(f"Invalid monetary amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_EVEN)


# ── VAT treatments ─────────────────────────────────────────


@dataclass(frozen=True)
class VatTreatment:
    tag: str
    name: str
    rate: Decimal
    account_code: str
    tax_type: str

    @property
    def is_zero_rated(self) -> bool:
        return self.rate == 0


VAT_TREATMENTS: dict[str, VatTreatment] = {
    "uk_standard": VatTreatment(
        tag="uk_standard",
        name="Standard 20% VAT",
        rate=STANDARD_RATE,
        account_code="425",
        tax_type=TAX_STANDARD,
    ),
    "margin_scheme": VatTreatment(
        tag="margin_scheme",
        name="Margin Scheme",
        rate=Decimal("0"),
        account_code="424",
        tax_type=TAX_ZERO,
    ),
    "export": VatTreatment(
        tag="export",
        name="Export Sales",
        rate=Decimal("0"),
        account_code="423",
        tax_type=TAX_ZERO,
    ),
}


def get_vat_treatment(tag: Optional[str]) -> VatTreatment:
    """
    Look up a VAT treatment by tag or display name.

    Raises:
        ValidationError: unknown or missing tag. There is no default.
    """
    if tag:
        treatment = VAT_TREATMENTS.get(tag)
        if treatment:
            return treatment
        for candidate in VAT_TREATMENTS.values():
            if candidate.name == tag:
                return candidate
    raise ValidationError(
        f"Unknown VAT treatment: {tag!r}",
        details={"known_tags": sorted(VAT_TREATMENTS)},
    )


@dataclass(frozen=True)
class VatResult:
    ex_vat: Decimal
    inc_vat: Decimal
    vat_amount: Decimal
    rate: Decimal


def calculate_vat(tag: str, ex_vat: Number) -> VatResult:
    """Compute the VAT-inclusive amount for an ex-VAT sale under a treatment."""
    treatment = get_vat_treatment(tag)
    ex = to_money(ex_vat)
    if treatment.is_zero_rated:
        return VatResult(ex_vat=ex, inc_vat=ex, vat_amount=ZERO, rate=treatment.rate)

    vat = (ex * treatment.rate).quantize(CENT, rounding=ROUND_HALF_EVEN)
    return VatResult(ex_vat=ex, inc_vat=ex + vat, vat_amount=vat, rate=treatment.rate)


@dataclass(frozen=True)
class VatValidation:
    is_valid: bool
    expected_rate: Decimal
    expected_amount: Decimal
    actual_amount: Decimal
    discrepancy: Decimal
    zero_rate_bug: bool


def detect_zero_rate_bug(tag: str, ex_vat: Number, inc_vat: Number) -> bool:
    """
    Detect a zero-rated sale whose ex-VAT amount was back-derived as inc / 1.2.

    The inc-VAT figure is the true total in that case.
    """
    treatment = get_vat_treatment(tag)
    if not treatment.is_zero_rated:
        return False
    ex = to_money(ex_vat)
    inc = to_money(inc_vat)
    if abs(inc - ex) <= CENT:
        return False
    return abs(inc - ex * (1 + STANDARD_RATE)) < VAT_TOLERANCE


def repair_zero_rate_vat(inc_vat: Number) -> VatResult:
    """Both amounts become the original inc-VAT total."""
    inc = to_money(inc_vat)
    return VatResult(ex_vat=inc, inc_vat=inc, vat_amount=ZERO, rate=Decimal("0"))


def validate_sale_vat(tag: str, ex_vat: Number, inc_vat: Number) -> VatValidation:
    """Check stored amounts against the treatment, within a one pound tolerance."""
    treatment = get_vat_treatment(tag)
    ex = to_money(ex_vat)
    inc = to_money(inc_vat)

    expected = calculate_vat(tag, ex).vat_amount
    actual = inc - ex
    discrepancy = abs(actual - expected)

    return VatValidation(
        is_valid=discrepancy <= VAT_TOLERANCE,
        expected_rate=treatment.rate,
        expected_amount=expected,
        actual_amount=actual,
        discrepancy=discrepancy,
        zero_rate_bug=detect_zero_rate_bug(tag, ex, inc),
    )


# ── Margins ────────────────────────────────────────────────


@dataclass(frozen=True)
class MarginBreakdown:
    sale_amount_ex_vat: Decimal
    buy_price: Decimal
    shipping_cost: Decimal
    card_fees: Decimal
    direct_costs: Decimal
    introducer_commission: Decimal
    total_deductions: Decimal


@dataclass(frozen=True)
class MarginResult:
    gross_margin: Decimal
    commissionable_margin: Decimal
    breakdown: MarginBreakdown


def calculate_margins(
    ex_vat: Number,
    buy_price: Number = None,
    shipping: Number = None,
    card_fees: Number = None,
    direct_costs: Number = None,
    introducer_commission: Number = None,
) -> MarginResult:
    """
    Derive gross and commissionable margin.

    Negative margins are returned as-is; check_sale_integrity reports them.
    """
    ex = to_money(ex_vat)
    buy = to_money(buy_price)
    ship = to_money(shipping)
    fees = to_money(card_fees)
    direct = to_money(direct_costs)
    introducer = to_money(introducer_commission)

    deductions = buy + ship + fees + direct
    gross = ex - deductions

    return MarginResult(
        gross_margin=gross,
        commissionable_margin=gross - introducer,
        breakdown=MarginBreakdown(
            sale_amount_ex_vat=ex,
            buy_price=buy,
            shipping_cost=ship,
            card_fees=fees,
            direct_costs=direct,
            introducer_commission=introducer,
            total_deductions=deductions,
        ),
    )


def margin_percent(margin: Number, ex_vat: Number) -> Optional[Decimal]:
    """Margin as a percentage of the ex-VAT sale amount, or None for a zero sale."""
    ex = to_money(ex_vat)
    if ex == 0:
        return None
    return (to_money(margin) / ex * 100).quantize(CENT, rounding=ROUND_HALF_EVEN)


def check_sale_integrity(
    ex_vat: Number,
    buy_price: Number,
    gross_margin: Number,
    authenticity_status: Optional[str] = None,
) -> list[DataIntegrityWarning]:
    """Collect non-fatal data quality warnings for a sale."""
    ex = to_money(ex_vat)
    buy = to_money(buy_price)
    gross = to_money(gross_margin)
    warnings: list[DataIntegrityWarning] = []

    if ex == 0:
        warnings.append(DataIntegrityWarning(
            IntegrityWarningKind.ZERO_SALE_AMOUNT,
            "Sale amount is zero",
        ))
    if gross < 0:
        warnings.append(DataIntegrityWarning(
            IntegrityWarningKind.NEGATIVE_MARGIN,
            f"Gross margin is negative ({gross})",
        ))
    if buy > ex:
        warnings.append(DataIntegrityWarning(
            IntegrityWarningKind.BUY_EXCEEDS_SALE,
            f"Buy price {buy} exceeds sale amount {ex}",
        ))
    if authenticity_status == "not_verified":
        warnings.append(DataIntegrityWarning(
            IntegrityWarningKind.UNVERIFIED_AUTHENTICITY,
            "Item authenticity has not been verified",
        ))
    return warnings
