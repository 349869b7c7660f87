"""Bill allocation: turns a receipt plus item selections into per-participant shares.

Everything here is pure. Amounts carry full float precision; rounding to cents
is left to whoever renders the result.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Sequence, Tuple

PERCENT_TOLERANCE = 1e-9


class AllocationError(Exception):
    pass


class InvalidInput(AllocationError):
    pass


class ItemNotFound(AllocationError):
    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id!r} is not on the receipt")
        self.item_id = item_id


class SplitStrategy(str, Enum):
    EQUAL = "equal"
    CUSTOM = "custom"


@dataclass(frozen=True)
class LineItem:
    id: str
    name: str
    price: float


@dataclass(frozen=True)
class Receipt:
    subtotal: float
    tax_amount: float
    tip_amount: float
    total_amount: float
    items: Tuple[LineItem, ...] = ()

    def find_item(self, item_id: str) -> LineItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise ItemNotFound(item_id)


@dataclass(frozen=True)
class Selection:
    item_id: str
    participant_id: str
    percentage: float


@dataclass(frozen=True)
class Participant:
    id: str
    name: str
    is_owner: bool = False


@dataclass(frozen=True)
class ShareLine:
    item_id: str
    name: str
    price: float
    percentage: float
    amount: float


@dataclass(frozen=True)
class ParticipantShare:
    participant_id: str
    subtotal_share: float
    tax_share: float
    tip_share: float
    total_share: float
    line_items: Tuple[ShareLine, ...] = ()


@dataclass(frozen=True)
class Allocation:
    strategy: SplitStrategy
    shares: Dict[str, ParticipantShare]
    unallocated_items: Tuple[LineItem, ...] = ()
    allocated_total: float = 0.0
    unassigned_amount: float = 0.0

    @property
    def unallocated_item_total(self) -> float:
        return sum(item.price for item in self.unallocated_items)


def validate_receipt(receipt: Receipt) -> None:
    for label, value in (
        ("subtotal", receipt.subtotal),
        ("tax_amount", receipt.tax_amount),
        ("tip_amount", receipt.tip_amount),
        ("total_amount", receipt.total_amount),
    ):
        if value < 0:
            raise InvalidInput(f"{label} must be >= 0, got {value}")
    seen = set()
    for item in receipt.items:
        if item.price < 0:
            raise InvalidInput(f"Price of item {item.id!r} must be >= 0, got {item.price}")
        if item.id in seen:
            raise InvalidInput(f"Duplicate item id {item.id!r}")
        seen.add(item.id)


def validate_selections(receipt: Receipt, selections: Iterable[Selection]) -> None:
    for sel in selections:
        if sel.percentage < 0:
            raise InvalidInput(f"Percentage must be >= 0, got {sel.percentage} for item {sel.item_id!r}")
        receipt.find_item(sel.item_id)


def normalize_item_shares(selections: Sequence[Selection], item_id: str) -> List[Tuple[str, float]]:
    """Rescale the claims on one item so they add up to 100.

    Returns ``(participant_id, normalized_percentage)`` in selection order, or an
    empty list when nobody claims a positive share (the item is unallocated).
    """
    on_item = [s for s in selections if s.item_id == item_id]
    for sel in on_item:
        if sel.percentage < 0:
            raise InvalidInput(f"Percentage must be >= 0, got {sel.percentage} for item {item_id!r}")
    total_raw = sum(s.percentage for s in on_item)
    if total_raw <= 0:
        return []
    return [(s.participant_id, (s.percentage / total_raw) * 100.0) for s in on_item]


def _ratio(amount: float, subtotal: float) -> float:
    # tax or tip on a zero subtotal has nothing to attach to
    if subtotal == 0:
        return 0.0
    return amount / subtotal


def _equal_share(participant_id: str, receipt: Receipt, participant_count: int) -> ParticipantShare:
    if participant_count <= 0:
        raise InvalidInput(f"Participant count must be > 0, got {participant_count}")
    return ParticipantShare(
        participant_id=participant_id,
        subtotal_share=receipt.subtotal / participant_count,
        tax_share=receipt.tax_amount / participant_count,
        tip_share=receipt.tip_amount / participant_count,
        total_share=receipt.total_amount / participant_count,
    )


def _custom_share(participant_id: str, receipt: Receipt, selections: Sequence[Selection]) -> ParticipantShare:
    lines: List[ShareLine] = []
    seen_items = set()
    for sel in selections:
        if sel.participant_id != participant_id or sel.item_id in seen_items:
            continue
        seen_items.add(sel.item_id)
        item = receipt.find_item(sel.item_id)
        # repeated rows for one item collapse into a single line
        percentage = sum(pct for pid, pct in normalize_item_shares(selections, item.id) if pid == participant_id)
        if percentage <= 0:
            continue
        lines.append(
            ShareLine(
                item_id=item.id,
                name=item.name,
                price=item.price,
                percentage=percentage,
                amount=item.price * (percentage / 100.0),
            )
        )

    subtotal_share = sum(line.amount for line in lines)
    tax_share = subtotal_share * _ratio(receipt.tax_amount, receipt.subtotal)
    tip_share = subtotal_share * _ratio(receipt.tip_amount, receipt.subtotal)
    return ParticipantShare(
        participant_id=participant_id,
        subtotal_share=subtotal_share,
        tax_share=tax_share,
        tip_share=tip_share,
        total_share=subtotal_share + tax_share + tip_share,
        line_items=tuple(lines),
    )


def compute_participant_share(
    participant_id: str,
    receipt: Receipt,
    selections: Sequence[Selection],
    strategy: SplitStrategy,
    participant_count: int,
) -> ParticipantShare:
    strategy = SplitStrategy(strategy)
    validate_receipt(receipt)
    if strategy is SplitStrategy.EQUAL:
        return _equal_share(participant_id, receipt, participant_count)
    validate_selections(receipt, selections)
    return _custom_share(participant_id, receipt, selections)


def compute_all_shares(
    receipt: Receipt,
    selections: Sequence[Selection],
    strategy: SplitStrategy,
    participants: Sequence[Participant],
) -> Dict[str, ParticipantShare]:
    strategy = SplitStrategy(strategy)
    ids = [p.id for p in participants]
    if len(set(ids)) != len(ids):
        raise InvalidInput("Duplicate participant ids in roster")
    validate_receipt(receipt)
    if strategy is SplitStrategy.EQUAL:
        if not participants:
            raise InvalidInput("Participant count must be > 0, got 0")
        return {pid: _equal_share(pid, receipt, len(ids)) for pid in ids}
    selections = list(selections)
    validate_selections(receipt, selections)
    return {pid: _custom_share(pid, receipt, selections) for pid in ids}


def find_unallocated_items(receipt: Receipt, selections: Sequence[Selection]) -> List[LineItem]:
    return [item for item in receipt.items if not normalize_item_shares(selections, item.id)]


def allocate(
    receipt: Receipt,
    selections: Sequence[Selection],
    strategy: SplitStrategy,
    participants: Sequence[Participant],
) -> Allocation:
    """Shares for everyone plus whatever part of the bill nobody is paying for."""
    strategy = SplitStrategy(strategy)
    selections = list(selections)
    shares = compute_all_shares(receipt, selections, strategy, participants)
    unallocated: Tuple[LineItem, ...] = ()
    if strategy is SplitStrategy.CUSTOM:
        unallocated = tuple(find_unallocated_items(receipt, selections))
    allocated_total = sum(s.total_share for s in shares.values())
    unassigned = receipt.total_amount - allocated_total
    if abs(unassigned) < PERCENT_TOLERANCE:
        unassigned = 0.0
    return Allocation(
        strategy=strategy,
        shares=shares,
        unallocated_items=unallocated,
        allocated_total=allocated_total,
        unassigned_amount=unassigned,
    )
