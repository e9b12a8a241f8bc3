"""
Split calculator.

Divides a total amount of lamports between recipients, either equally or by
custom percentages, without losing or creating a single lamport to rounding.
"""

from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from solsplit.core.addresses import is_valid_address
from solsplit.exceptions import SolsplitError

LAMPORTS_PER_SOL = 1_000_000_000

# Allowed drift of a custom percentage vector from 100
PERCENT_TOLERANCE = Decimal("0.0001")

PercentValue = Union[str, float, int, Decimal, None]


class ValidationError(SolsplitError):
    """Raised when a split request is malformed. Nothing has been signed."""
    pass


class SplitMode(str, Enum):
    """How the total is divided."""
    EQUAL = "equal"
    CUSTOM = "custom"


@dataclass
class SplitRequest:
    """
    A request to split one payment between several recipients.

    Attributes:
        total_lamports: Amount to distribute, in lamports
        recipients: Ordered recipient addresses (payer excluded)
        mode: Equal or custom percentage split
        percentages: Per-recipient percentages, custom mode only
    """

    total_lamports: int
    recipients: List[str]
    mode: SplitMode = SplitMode.EQUAL
    percentages: Optional[List[PercentValue]] = None

    def __post_init__(self):
        if isinstance(self.mode, str):
            self.mode = SplitMode(self.mode)


@dataclass
class Allocation:
    """Ordered mapping of recipient address to lamports."""

    recipients: List[str] = field(default_factory=list)
    amounts: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.amounts)

    def items(self) -> Iterator[Tuple[str, int]]:
        return iter(zip(self.recipients, self.amounts))

    def nonzero(self) -> List[Tuple[str, int]]:
        """Recipients that actually receive a transfer."""
        return [(r, a) for r, a in self.items() if a > 0]

    def as_dict(self) -> Dict[str, int]:
        return dict(self.items())

    def __len__(self) -> int:
        return len(self.recipients)


def to_lamports(amount: Union[str, int, float, Decimal]) -> int:
    """
    Convert a SOL amount to lamports.

    Args:
        amount: Amount in SOL, e.g. "1.5"

    Returns:
        Lamports, rounded half up

    Raises:
        ValidationError: If the amount is not a positive number
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")

    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")

    lamports = int((value * LAMPORTS_PER_SOL).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if lamports <= 0:
        raise ValidationError("Amount must be greater than 0")
    return lamports


def format_sol(lamports: int) -> str:
    """Render lamports as SOL with 9 decimals."""
    return f"{Decimal(lamports) / LAMPORTS_PER_SOL:.9f}"


def included_indices(recipients: Sequence[Optional[str]]) -> List[int]:
    """Positions of the non-blank entries of a recipient list."""
    return [i for i, r in enumerate(recipients) if r and r.strip()]


def validate_recipients(recipients: Sequence[str], payer: Optional[str] = None) -> List[str]:
    """
    Normalize and validate a recipient list.

    Blank entries are dropped; everything else must be a unique, well-formed
    address different from the payer. ``included_indices`` gives the
    positions that were kept.

    Returns:
        Trimmed recipient addresses in input order
    """
    trimmed = [recipients[i].strip() for i in included_indices(recipients)]

    if not trimmed:
        raise ValidationError("Enter at least one recipient address")

    if payer is not None and payer in trimmed:
        raise ValidationError("You can't send to your own address")

    if len(set(trimmed)) != len(trimmed):
        raise ValidationError("Duplicate recipient addresses are not allowed")

    invalid = [r for r in trimmed if not is_valid_address(r)]
    if invalid:
        raise ValidationError(f"Invalid recipient address: {invalid[0]}")

    return trimmed


def _parse_percent(value: PercentValue) -> Optional[Decimal]:
    """Parse a percentage; None for blanks and anything non-numeric."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return None
    return parsed if parsed.is_finite() else None


def _equal_split(total: int, count: int) -> List[int]:
    base = total // count
    if base == 0:
        raise ValidationError("Amount too small to split between recipients")
    remainder = total - base * count
    return [base + 1 if i < remainder else base for i in range(count)]


def _custom_split(total: int, percentages: Sequence[PercentValue], count: int) -> List[int]:
    if len(percentages) != count:
        raise ValidationError(
            f"Expected {count} percentages, got {len(percentages)}"
        )

    parsed = [_parse_percent(p) for p in percentages]
    if any(p is None for p in parsed):
        raise ValidationError("Enter a valid percentage for each recipient; total must be 100%")
    if any(p < 0 or p > 100 for p in parsed):
        raise ValidationError("Percentages must be between 0 and 100")
    if abs(sum(parsed) - 100) >= PERCENT_TOLERANCE:
        raise ValidationError("Enter a valid percentage for each recipient; total must be 100%")

    reals = [Decimal(total) * p / 100 for p in parsed]
    floors = [int(r.to_integral_value(rounding=ROUND_FLOOR)) for r in reals]
    remainder = total - sum(floors)

    # Largest fractional part first, earlier recipients win ties
    order = sorted(range(count), key=lambda i: (-(reals[i] - floors[i]), i))
    amounts = list(floors)

    # Within tolerance the percentages may not sum to exactly 100, so the
    # remainder can exceed the count or go negative.
    step = 0
    while remainder > 0:
        amounts[order[step % count]] += 1
        remainder -= 1
        step += 1

    step = 0
    while remainder < 0:
        index = order[-1 - step % count]
        if amounts[index] > 0:
            amounts[index] -= 1
            remainder += 1
        step += 1

    return amounts


def compute_split(request: SplitRequest) -> Allocation:
    """
    Compute the exact per-recipient allocation for a request.

    Equal mode gives the first ``total mod n`` recipients one extra lamport.
    Custom mode uses largest-remainder apportionment over ``total * p / 100``.

    Args:
        request: The split request

    Returns:
        Allocation whose amounts sum to ``request.total_lamports``

    Raises:
        ValidationError: On a non-positive total, no recipients, or invalid percentages
    """
    total = request.total_lamports
    count = len(request.recipients)

    if total <= 0:
        raise ValidationError("Amount must be greater than 0")
    if count == 0:
        raise ValidationError("Enter at least one recipient address")

    if request.mode == SplitMode.EQUAL:
        amounts = _equal_split(total, count)
    else:
        amounts = _custom_split(total, request.percentages or [], count)

    return Allocation(recipients=list(request.recipients), amounts=amounts)


def auto_fill_percentages(percentages: Sequence[PercentValue]) -> List[Optional[str]]:
    """
    Fill blank percentages so that the whole vector sums to 100.

    The remaining share is divided in hundredths of a percent; leftover
    hundredths go to the earliest blanks.

    Args:
        percentages: Percentages with blanks as None or empty strings

    Returns:
        A new list where every blank holds a 2-decimal percentage string

    Raises:
        ValidationError: If the fixed percentages already exceed 100
    """
    parsed = [_parse_percent(p) for p in percentages]
    blanks = [i for i, p in enumerate(parsed) if p is None]
    filled: List[Optional[str]] = [None if p is None else str(p) for p in percentages]

    if not blanks:
        return filled

    remaining = Decimal(100) - sum(p for p in parsed if p is not None)
    if remaining < 0:
        raise ValidationError("Manual percentages exceed 100%")

    cents = int((remaining * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    base_cents = cents // len(blanks)
    extra = cents - base_cents * len(blanks)

    for position, index in enumerate(blanks):
        share = base_cents + (1 if position < extra else 0)
        filled[index] = f"{Decimal(share) / 100:.2f}"

    return filled
