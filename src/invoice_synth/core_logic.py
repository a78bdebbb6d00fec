"""Business logic layer for the invoice line synthesizer.

This module contains the target-driven generation engine. Given a catalog
snapshot, per-tax-rate targets, and business constraints, it synthesizes
invoice lines whose totals approximate the targets without ever breaking the
hard constraints (stock availability and discount ceilings).

The engine is a bounded, randomized greedy heuristic. It performs no I/O: the
catalog and parameters arrive fully materialized, the only non-determinism is
the candidate pick drawn from the generator carried by
:class:`SynthesisContext`, and every run owns its own :class:`StockLedger`.
Workbook-facing helpers at the bottom of the module (``RuntimeContext`` and
friends) are thin wrappers used by the CLI to feed the engine and to export an
accepted batch.
"""

from __future__ import annotations

import random
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, AllocationState, ErrorKind


ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.01")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class GenerationFailure(BusinessRuleViolation):
    """Terminal failure of a generation run tagged with a stable error kind.

    Callers branch on :attr:`kind`; :attr:`message` is for humans only.
    """

    kind: ErrorKind = ErrorKind.GENERATION_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NoEligibleProductsError(GenerationFailure):
    """Raised when catalog filtering leaves nothing to generate from."""

    kind = ErrorKind.NO_ELIGIBLE_PRODUCTS

    def __init__(self) -> None:
        super().__init__("No product matches the generation criteria (tax rate, min/max price)")


class NoProductsForRateError(GenerationFailure):
    """Raised when a target's tax rate has no eligible candidate."""

    kind = ErrorKind.NO_PRODUCTS_FOR_RATE

    def __init__(self, tax_rate: Decimal) -> None:
        super().__init__(f"No eligible product available for tax rate {tax_rate}%")
        self.tax_rate = tax_rate


class InsufficientStockError(GenerationFailure):
    """Raised when a target cannot get close enough with the stock at hand."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, tax_rate: Decimal, outstanding: Decimal) -> None:
        super().__init__(
            f"Insufficient stock to reach the target for tax rate {tax_rate}%: "
            f"{outstanding:.3f} excluding tax still outstanding"
        )
        self.tax_rate = tax_rate
        self.outstanding = outstanding


class NoLinesGeneratedError(GenerationFailure):
    """Raised when a run completes without producing a single line."""

    kind = ErrorKind.NO_LINES_GENERATED

    def __init__(self) -> None:
        super().__init__("Unable to generate invoice lines with the given constraints")


class RandomSource(Protocol):
    """Minimal interface the engine needs from a pseudo-random generator."""

    def choice(self, seq: Sequence[Any]) -> Any:
        ...


@dataclass(frozen=True)
class SynthesisContext:
    """Dependencies of a generation run: tolerances and the random source."""

    policy: data_manager.GenerationPolicy = field(default_factory=data_manager.GenerationPolicy)
    rng: RandomSource = field(default_factory=random.Random, repr=False, compare=False)


def build_context(
    *,
    seed: Optional[int] = None,
    policy: Optional[data_manager.GenerationPolicy] = None,
) -> SynthesisContext:
    """Create a :class:`SynthesisContext` with a dedicated generator.

    Passing ``seed`` makes candidate picks, and therefore whole runs,
    reproducible. Each context owns its own :class:`random.Random` so
    concurrent runs never share generator state.
    """

    return SynthesisContext(
        policy=policy if policy is not None else data_manager.GenerationPolicy(),
        rng=random.Random(seed),
    )


@dataclass(frozen=True)
class TargetSpec:
    """Requested total for one tax rate, exclusive and/or inclusive of tax.

    A target without any amount resolves to zero and is skipped.
    """

    tax_rate: Decimal
    amount_excl: Optional[Decimal] = None
    amount_incl: Optional[Decimal] = None


@dataclass(frozen=True)
class ResolvedTarget:
    """Target with both amounts resolved by :func:`normalize_target`."""

    tax_rate: Decimal
    amount_excl: Decimal
    amount_incl: Decimal

    @property
    def is_active(self) -> bool:
        return self.amount_excl > ZERO


@dataclass(frozen=True)
class GenerationParameters:
    """Complete, immutable input of a generation run."""

    max_lines: int
    min_price_incl: Decimal
    max_price_incl: Decimal
    allowed_rates: FrozenSet[Decimal]
    foreign_client: bool
    targets: Tuple[TargetSpec, ...]
    catalog: Tuple[data_manager.CatalogEntry, ...]
    stamp_duty_enabled: bool = False
    stamp_duty_amount: Decimal = ZERO

    def __post_init__(self) -> None:
        object.__setattr__(self, "allowed_rates", frozenset(self.allowed_rates))
        object.__setattr__(self, "targets", tuple(self.targets))
        object.__setattr__(self, "catalog", tuple(self.catalog))


@dataclass(frozen=True)
class StockLedger:
    """Run-local record of quantities tentatively reserved per product.

    The ledger is a value: :meth:`reserve` returns a new ledger and leaves the
    original untouched, so every allocation step receives the ledger it should
    work against and hands back the one it produced. Nothing here ever touches
    the persisted stock level.
    """

    reserved: Mapping[str, int] = field(default_factory=dict)

    def reserved_for(self, product_id: str) -> int:
        return self.reserved.get(product_id, 0)

    def reserve(self, product_id: str, quantity: int) -> StockLedger:
        updated = dict(self.reserved)
        updated[product_id] = updated.get(product_id, 0) + quantity
        return StockLedger(reserved=updated)

    def available(self, entry: data_manager.CatalogEntry) -> Optional[Decimal]:
        """Remaining stock for ``entry``, or ``None`` when stock does not cap it."""

        if not entry.is_stock_limited:
            return None
        stock = entry.stock_quantity if entry.stock_quantity is not None else ZERO
        return stock - self.reserved_for(entry.product_id)

    def has_capacity(self, entry: data_manager.CatalogEntry) -> bool:
        available = self.available(entry)
        return available is None or available > ZERO


@dataclass(frozen=True)
class AllocationOutcome:
    """Result of driving one target through the allocation state machine."""

    target: ResolvedTarget
    state: AllocationState
    lines: Tuple[data_manager.GeneratedLine, ...]
    ledger: StockLedger
    remaining: Decimal
    attempts: int


@dataclass(frozen=True)
class TargetComparison:
    """Diagnostic record comparing one target with what was generated."""

    tax_rate: Decimal
    target_excl: Decimal
    target_incl: Decimal
    actual_excl: Decimal
    delta: Decimal
    percent_deviation: Optional[Decimal]


@dataclass(frozen=True)
class RunSummary:
    """Totals and per-target diagnostics of a successful run."""

    subtotal_excl: Decimal
    total_tax: Decimal
    total_incl: Decimal
    total_discount: Decimal
    stamp_duty: Decimal
    net_payable: Decimal
    line_count: int
    targets: Tuple[TargetComparison, ...]


@dataclass(frozen=True)
class GenerationResult:
    """Lines, summary, and final ledger produced by :func:`generate_lines`."""

    lines: Tuple[data_manager.GeneratedLine, ...]
    summary: RunSummary
    ledger: StockLedger
    outcomes: Tuple[AllocationOutcome, ...]


@dataclass(frozen=True)
class GenerationResponse:
    """Boundary response: either lines plus summary, or a typed failure."""

    success: bool
    lines: Tuple[data_manager.GeneratedLine, ...] = ()
    summary: Optional[RunSummary] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def succeeded(cls, result: GenerationResult) -> GenerationResponse:
        return cls(success=True, lines=result.lines, summary=result.summary)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str) -> GenerationResponse:
        return cls(success=False, error=kind, message=message)

    def to_payload(self) -> Dict[str, Any]:
        """Render the response as plain data with decimals as strings."""

        if not self.success:
            return {
                "success": False,
                "error": self.error.value if self.error is not None else ErrorKind.GENERATION_ERROR.value,
                "message": self.message or "",
            }
        return {
            "success": True,
            "lines": [_to_plain(asdict(line)) for line in self.lines],
            "summary": _to_plain(asdict(self.summary)) if self.summary is not None else None,
        }


def _to_plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: _to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Catalog filter and target normalizer
# ---------------------------------------------------------------------------


def is_eligible(
    entry: data_manager.CatalogEntry,
    *,
    allowed_rates: Iterable[Decimal],
    min_price_incl: Decimal,
    max_price_incl: Decimal,
) -> bool:
    """Return ``True`` when ``entry`` may take part in a generation run.

    A product qualifies when its tax rate is allowed and its tax-inclusive
    unit price lies within ``[min_price_incl, max_price_incl]``. Products
    without a positive tax-exclusive price are never eligible because they
    cannot move a target.
    """

    if entry.tax_rate not in allowed_rates:
        return False
    if entry.unit_price_incl < min_price_incl or entry.unit_price_incl > max_price_incl:
        return False
    return entry.unit_price_excl > ZERO


def filter_catalog(
    catalog: Iterable[data_manager.CatalogEntry],
    *,
    allowed_rates: Iterable[Decimal],
    min_price_incl: Decimal,
    max_price_incl: Decimal,
) -> List[data_manager.CatalogEntry]:
    """Narrow ``catalog`` to eligible entries, preserving catalog order."""

    rates = frozenset(allowed_rates)
    return [
        entry
        for entry in catalog
        if is_eligible(entry, allowed_rates=rates, min_price_incl=min_price_incl, max_price_incl=max_price_incl)
    ]


def group_by_rate(entries: Iterable[data_manager.CatalogEntry]) -> Dict[Decimal, List[data_manager.CatalogEntry]]:
    """Partition catalog entries by nominal tax rate."""

    pools: Dict[Decimal, List[data_manager.CatalogEntry]] = {}
    for entry in entries:
        pools.setdefault(entry.tax_rate, []).append(entry)
    return pools


def select_eligible_pools(params: GenerationParameters) -> Dict[Decimal, List[data_manager.CatalogEntry]]:
    """Filter the request catalog and group the survivors by tax rate.

    Raises:
        NoEligibleProductsError: If no catalog entry passes the filter.
    """

    eligible = filter_catalog(
        params.catalog,
        allowed_rates=params.allowed_rates,
        min_price_incl=params.min_price_incl,
        max_price_incl=params.max_price_incl,
    )
    if not eligible:
        raise NoEligibleProductsError()
    pools = group_by_rate(eligible)
    log.debug(
        "Catalog filter kept %d of %d entries across %d tax rates",
        len(eligible),
        len(params.catalog),
        len(pools),
    )
    return pools


def normalize_target(target: TargetSpec, *, foreign_client: bool) -> ResolvedTarget:
    """Resolve the missing side of ``target``.

    The tax-inclusive amount is ``exclusive * (1 + rate / 100)`` and the
    exclusive amount ``inclusive / (1 + rate / 100)``. For foreign clients the
    effective rate is zero, so both sides are equal regardless of the nominal
    rate. When the caller supplied both amounts they are kept as given.
    """

    factor = ONE if foreign_client else ONE + target.tax_rate / HUNDRED
    amount_excl = target.amount_excl
    amount_incl = target.amount_incl
    if amount_excl is not None and amount_incl is None:
        amount_incl = amount_excl * factor
    elif amount_incl is not None and amount_excl is None:
        amount_excl = amount_incl / factor
    return ResolvedTarget(
        tax_rate=target.tax_rate,
        amount_excl=amount_excl if amount_excl is not None else ZERO,
        amount_incl=amount_incl if amount_incl is not None else ZERO,
    )


def normalize_targets(targets: Iterable[TargetSpec], *, foreign_client: bool) -> List[ResolvedTarget]:
    return [normalize_target(target, foreign_client=foreign_client) for target in targets]


# ---------------------------------------------------------------------------
# Candidate selector
# ---------------------------------------------------------------------------


def line_amount(unit_price_excl: Decimal, quantity: int, discount_percent: Decimal) -> Decimal:
    """Tax-exclusive amount of ``quantity`` units at ``discount_percent`` off."""

    return quantity * unit_price_excl * (ONE - discount_percent / HUNDRED)


def discount_steps(max_discount: Optional[Decimal], step: Decimal) -> List[Decimal]:
    """Discounts to try, from 0 up to the product ceiling in ``step`` increments."""

    ceiling = min(max(max_discount if max_discount is not None else ZERO, ZERO), HUNDRED)
    steps: List[Decimal] = []
    current = ZERO
    while current <= ceiling:
        steps.append(current)
        current += step
    return steps


def quantity_ceiling(
    entry: data_manager.CatalogEntry,
    remaining: Decimal,
    ledger: StockLedger,
    policy: data_manager.GenerationPolicy,
) -> int:
    """Largest quantity the local search may try for ``entry``.

    Every product gets a bound derived from ``remaining / price`` plus
    ``policy.quantity_headroom``. Stock-limited products are further bounded
    by their true remaining capacity in ``ledger`` (whole units only).
    Unlimited or backorder-allowed products are capped by
    ``policy.max_unlimited_quantity`` instead.
    """

    if entry.unit_price_excl <= ZERO:
        return 0
    estimate = int((remaining / entry.unit_price_excl).to_integral_value(rounding=ROUND_CEILING))
    bound = estimate + policy.quantity_headroom
    available = ledger.available(entry)
    if available is not None:
        return max(min(int(available.to_integral_value(rounding=ROUND_FLOOR)), bound), 0)
    return max(1, min(policy.max_unlimited_quantity, bound))


def search_best_combination(
    entry: data_manager.CatalogEntry,
    remaining: Decimal,
    ceiling: int,
    policy: data_manager.GenerationPolicy,
) -> Optional[Tuple[int, Decimal]]:
    """Exhaustive local search over quantity and discount for one product.

    Every ``(quantity, discount)`` pair with ``1 <= quantity <= ceiling`` and
    a discount on the :func:`discount_steps` grid is scored by
    ``|amount - remaining|``. Only amounts up to
    ``remaining * policy.selection_overshoot`` are admissible. Ties keep the
    first pair found, which favours smaller quantities and smaller discounts.
    The quantity scan stops as soon as even the deepest discount overshoots,
    since larger quantities can only overshoot further.

    Returns:
        tuple[int, Decimal] | None: Best ``(quantity, discount)`` pair, or
            ``None`` when no admissible combination exists.
    """

    limit = remaining * policy.selection_overshoot
    steps = discount_steps(entry.max_discount, policy.discount_step)
    deepest = steps[-1]
    best: Optional[Tuple[int, Decimal]] = None
    best_diff: Optional[Decimal] = None
    for quantity in range(1, ceiling + 1):
        if line_amount(entry.unit_price_excl, quantity, deepest) > limit:
            break
        for discount in steps:
            amount = line_amount(entry.unit_price_excl, quantity, discount)
            if amount > limit:
                continue
            diff = abs(amount - remaining)
            if best_diff is None or diff < best_diff:
                best = (quantity, discount)
                best_diff = diff
    return best


def build_line(
    entry: data_manager.CatalogEntry,
    quantity: int,
    discount_percent: Decimal,
    *,
    foreign_client: bool,
) -> data_manager.GeneratedLine:
    """Materialize a :class:`~invoice_synth.data_manager.GeneratedLine`.

    Tax is zero for foreign clients, otherwise ``line_excl * rate / 100``. The
    product's nominal rate is kept on the line in both cases.
    """

    total_excl = line_amount(entry.unit_price_excl, quantity, discount_percent)
    tax = ZERO if foreign_client else total_excl * entry.tax_rate / HUNDRED
    return data_manager.GeneratedLine(
        product_id=entry.product_id,
        product_name=entry.product_name,
        product_reference=entry.reference,
        quantity=quantity,
        unit_price_excl=entry.unit_price_excl,
        tax_rate=entry.tax_rate,
        discount_percent=discount_percent,
        line_total_excl=total_excl,
        line_tax=tax,
        line_total_incl=total_excl + tax,
        max_discount=entry.max_discount,
        stock_quantity=entry.stock_quantity,
        unlimited_stock=entry.unlimited_stock,
        allow_backorder=entry.allow_backorder,
    )


def select_candidate(
    context: SynthesisContext,
    remaining: Decimal,
    pool: Sequence[data_manager.CatalogEntry],
    ledger: StockLedger,
    *,
    foreign_client: bool,
) -> Tuple[data_manager.CatalogEntry, Optional[data_manager.GeneratedLine]]:
    """Pick a random candidate from ``pool`` and fit the closest line to it.

    The pick is uniform over ``pool`` and drawn from ``context.rng`` so that
    product usage is diversified rather than always favouring the first or
    cheapest match. The chosen product then goes through
    :func:`search_best_combination`, and the winning quantity is re-validated
    against the current ledger capacity before the line is built.

    Args:
        context (SynthesisContext): Policy and random source of the run.
        remaining (Decimal): Tax-exclusive amount still missing for the target.
        pool (Sequence[CatalogEntry]): Non-empty eligible-now pool.
        ledger (StockLedger): Reservations made so far in this run.
        foreign_client (bool): Forces zero tax on the produced line.

    Returns:
        tuple[CatalogEntry, GeneratedLine | None]: The picked entry and the
            fitted line, or ``None`` in place of the line when the candidate
            had to be discarded.
    """

    entry = context.rng.choice(pool)
    ceiling = quantity_ceiling(entry, remaining, ledger, context.policy)
    best = search_best_combination(entry, remaining, ceiling, context.policy)
    if best is None:
        log.debug("Discarding '%s': no admissible quantity/discount for %s", entry.product_id, remaining)
        return entry, None

    quantity, discount = best
    available = ledger.available(entry)
    if available is not None:
        quantity = min(quantity, int(available.to_integral_value(rounding=ROUND_FLOOR)))
        if quantity <= 0:
            log.debug("Discarding '%s': stock exhausted during selection", entry.product_id)
            return entry, None

    return entry, build_line(entry, quantity, discount, foreign_client=foreign_client)


# ---------------------------------------------------------------------------
# Per-rate allocator
# ---------------------------------------------------------------------------


def build_candidate_pool(
    candidates: Iterable[data_manager.CatalogEntry],
    *,
    remaining: Decimal,
    ledger: StockLedger,
    policy: data_manager.GenerationPolicy,
    excluded: Iterable[str] = (),
) -> List[data_manager.CatalogEntry]:
    """Return the eligible-now subset of ``candidates``.

    A candidate stays in the pool when its tax-exclusive unit price does not
    exceed ``remaining * policy.pool_overshoot``, it still has usable capacity
    in ``ledger``, and it has not been set aside via ``excluded``.
    """

    ceiling = remaining * policy.pool_overshoot
    skip = set(excluded)
    return [
        entry
        for entry in candidates
        if entry.product_id not in skip and entry.unit_price_excl <= ceiling and ledger.has_capacity(entry)
    ]


def next_allocation_state(
    remaining: Decimal,
    target_excl: Decimal,
    pool: Sequence[data_manager.CatalogEntry],
    *,
    lines_left: int,
    attempts_left: int,
    policy: data_manager.GenerationPolicy,
) -> AllocationState:
    """Decide where the allocation loop of one target goes next.

    The rules are evaluated in order:

    1. ``remaining <= epsilon`` -> ``SATISFIED``.
    2. No line budget left -> ``EXHAUSTED``.
    3. Empty pool or attempt cap reached -> ``BLOCKED`` when more than
       ``shortfall_threshold`` of the target is still outstanding, otherwise
       ``EXHAUSTED`` (the shortfall is accepted).
    4. Otherwise keep ``ALLOCATING``.

    The function is pure; it only looks at its arguments.
    """

    if remaining <= policy.epsilon:
        return AllocationState.SATISFIED
    if lines_left <= 0:
        return AllocationState.EXHAUSTED
    if not pool or attempts_left <= 0:
        if remaining > target_excl * policy.shortfall_threshold:
            return AllocationState.BLOCKED
        return AllocationState.EXHAUSTED
    return AllocationState.ALLOCATING


def allocate_target(
    context: SynthesisContext,
    target: ResolvedTarget,
    candidates: Sequence[data_manager.CatalogEntry],
    ledger: StockLedger,
    *,
    lines_left: int,
    foreign_client: bool,
) -> AllocationOutcome:
    """Drive one target through the allocation state machine.

    Each step rebuilds the eligible-now pool from ``candidates`` and the
    current ledger, asks :func:`next_allocation_state` what to do, and while
    the answer is ``ALLOCATING`` delegates to :func:`select_candidate`.
    Accepted lines advance the ledger and shrink ``remaining``. A candidate
    the selector discards is set aside for the rest of this target: the
    remaining amount only ever decreases, so it cannot become admissible
    again.

    Args:
        context (SynthesisContext): Policy and random source of the run.
        target (ResolvedTarget): Target with a positive exclusive amount.
        candidates (Sequence[CatalogEntry]): Eligible entries at the target's
            tax rate.
        ledger (StockLedger): Reservations made by earlier targets.
        lines_left (int): Remaining global line budget.
        foreign_client (bool): Forces zero tax on produced lines.

    Returns:
        AllocationOutcome: Final state, produced lines, and the advanced
            ledger. ``BLOCKED`` outcomes are reported, not raised; the caller
            decides whether they abort the run.
    """

    policy = context.policy
    remaining = target.amount_excl
    lines: List[data_manager.GeneratedLine] = []
    set_aside: set[str] = set()
    attempts = 0

    while True:
        pool = build_candidate_pool(
            candidates,
            remaining=remaining,
            ledger=ledger,
            policy=policy,
            excluded=set_aside,
        )
        state = next_allocation_state(
            remaining,
            target.amount_excl,
            pool,
            lines_left=lines_left - len(lines),
            attempts_left=policy.max_attempts - attempts,
            policy=policy,
        )
        if state is not AllocationState.ALLOCATING:
            break

        attempts += 1
        entry, line = select_candidate(context, remaining, pool, ledger, foreign_client=foreign_client)
        if line is None:
            set_aside.add(entry.product_id)
            continue

        lines.append(line)
        ledger = ledger.reserve(line.product_id, line.quantity)
        remaining -= line.line_total_excl
        log.debug(
            "Rate %s%%: accepted %s x '%s' at %s%% off (line=%s, remaining=%s)",
            target.tax_rate,
            line.quantity,
            line.product_id,
            line.discount_percent,
            line.line_total_excl,
            remaining,
        )

    log.debug(
        "Rate %s%% finished as %s after %d attempts (%d lines, remaining=%s)",
        target.tax_rate,
        state.value,
        attempts,
        len(lines),
        remaining,
    )
    return AllocationOutcome(
        target=target,
        state=state,
        lines=tuple(lines),
        ledger=ledger,
        remaining=remaining,
        attempts=attempts,
    )


# ---------------------------------------------------------------------------
# Result aggregator
# ---------------------------------------------------------------------------


def percent_deviation(actual: Decimal, target: Decimal) -> Optional[Decimal]:
    if target <= ZERO:
        return None
    return ((actual - target) / target * HUNDRED).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def aggregate_results(
    lines: Sequence[data_manager.GeneratedLine],
    targets: Sequence[ResolvedTarget],
    *,
    stamp_duty: Decimal = ZERO,
) -> RunSummary:
    """Sum ``lines`` and compare them with each resolved target.

    Args:
        lines (Sequence[GeneratedLine]): Every line produced by the run.
        targets (Sequence[ResolvedTarget]): Targets in request order,
            including skipped ones.
        stamp_duty (Decimal): Fixed stamp added on top of the inclusive total.

    Returns:
        RunSummary: Totals, discount granted, net payable, and one
            :class:`TargetComparison` per target.
    """

    subtotal_excl = sum((line.line_total_excl for line in lines), ZERO)
    total_tax = sum((line.line_tax for line in lines), ZERO)
    total_incl = sum((line.line_total_incl for line in lines), ZERO)
    total_discount = sum(
        (line.quantity * line.unit_price_excl - line.line_total_excl for line in lines),
        ZERO,
    )

    comparisons: List[TargetComparison] = []
    for target in targets:
        actual = sum((line.line_total_excl for line in lines if line.tax_rate == target.tax_rate), ZERO)
        comparisons.append(
            TargetComparison(
                tax_rate=target.tax_rate,
                target_excl=target.amount_excl,
                target_incl=target.amount_incl,
                actual_excl=actual,
                delta=actual - target.amount_excl,
                percent_deviation=percent_deviation(actual, target.amount_excl),
            )
        )

    return RunSummary(
        subtotal_excl=subtotal_excl,
        total_tax=total_tax,
        total_incl=total_incl,
        total_discount=total_discount,
        stamp_duty=stamp_duty,
        net_payable=total_incl + stamp_duty,
        line_count=len(lines),
        targets=tuple(comparisons),
    )


def resolve_stamp_duty(params: GenerationParameters) -> Decimal:
    """Stamp duty applies to enabled, non-foreign invoices only."""

    if params.foreign_client or not params.stamp_duty_enabled:
        return ZERO
    return params.stamp_duty_amount


# ---------------------------------------------------------------------------
# Run orchestration and request boundary
# ---------------------------------------------------------------------------


def generate_lines(context: SynthesisContext, params: GenerationParameters) -> GenerationResult:
    """Synthesize invoice lines for every target in ``params``.

    Targets are processed in request order against a single run-local
    :class:`StockLedger`, so stock reserved for one rate is not offered again
    to the next. The run is fail-fast: the first infeasible target aborts it
    and nothing produced so far is returned.

    Args:
        context (SynthesisContext): Policy and random source of the run.
        params (GenerationParameters): Constraints, targets, and catalog.

    Returns:
        GenerationResult: Lines, summary, final ledger, and per-target
            outcomes.

    Raises:
        NoEligibleProductsError: If the catalog filter keeps nothing.
        NoProductsForRateError: If an active target's rate has no candidates.
        InsufficientStockError: If a target ends ``BLOCKED``.
        NoLinesGeneratedError: If the run produced no line at all.
    """

    pools = select_eligible_pools(params)
    targets = normalize_targets(params.targets, foreign_client=params.foreign_client)

    ledger = StockLedger()
    lines: List[data_manager.GeneratedLine] = []
    outcomes: List[AllocationOutcome] = []
    for target in targets:
        if not target.is_active:
            log.debug("Skipping tax rate %s%%: resolved target is %s", target.tax_rate, target.amount_excl)
            continue
        candidates = pools.get(target.tax_rate)
        if not candidates:
            raise NoProductsForRateError(target.tax_rate)

        outcome = allocate_target(
            context,
            target,
            candidates,
            ledger,
            lines_left=params.max_lines - len(lines),
            foreign_client=params.foreign_client,
        )
        if outcome.state is AllocationState.BLOCKED:
            raise InsufficientStockError(target.tax_rate, outcome.remaining)
        outcomes.append(outcome)
        lines.extend(outcome.lines)
        ledger = outcome.ledger

    if not lines:
        raise NoLinesGeneratedError()

    summary = aggregate_results(lines, targets, stamp_duty=resolve_stamp_duty(params))
    return GenerationResult(
        lines=tuple(lines),
        summary=summary,
        ledger=ledger,
        outcomes=tuple(outcomes),
    )


def run_generation(context: SynthesisContext, params: GenerationParameters) -> GenerationResponse:
    """Run :func:`generate_lines` and convert every outcome into a response.

    Known failures become responses carrying their kind. Anything else is
    logged with its traceback and reported as ``generation_error``; no partial
    result is ever returned.
    """

    try:
        result = generate_lines(context, params)
    except GenerationFailure as exc:
        log.warning("Generation rejected (%s): %s", exc.kind.value, exc.message)
        return GenerationResponse.failed(exc.kind, exc.message)
    except Exception as exc:
        log.exception("Unexpected error while generating invoice lines")
        return GenerationResponse.failed(ErrorKind.GENERATION_ERROR, str(exc) or type(exc).__name__)

    log.info(
        "Generated %d lines (excl=%s, tax=%s, incl=%s)",
        result.summary.line_count,
        result.summary.subtotal_excl,
        result.summary.total_tax,
        result.summary.total_incl,
    )
    return GenerationResponse.succeeded(result)


def catalog_entry_from_mapping(raw: Mapping[str, Any]) -> data_manager.CatalogEntry:
    """Build a catalog entry from a request mapping keyed by field name."""

    unit_price_excl = data_manager.to_decimal(raw["unit_price_excl"], None)
    if unit_price_excl is None:
        raise ValueError(f"Catalog entry '{raw.get('product_id')}' lacks unit_price_excl")
    tax_rate = data_manager.to_decimal(raw.get("tax_rate"), ZERO)
    unit_price_incl = data_manager.to_decimal(raw.get("unit_price_incl"), None)
    if unit_price_incl is None:
        unit_price_incl = unit_price_excl * (ONE + tax_rate / HUNDRED)
    reference = raw.get("reference")
    return data_manager.CatalogEntry(
        product_id=str(raw["product_id"]),
        product_name=str(raw.get("product_name") or ""),
        reference=str(reference) if reference is not None else None,
        unit_price_excl=unit_price_excl,
        unit_price_incl=unit_price_incl,
        tax_rate=tax_rate,
        max_discount=data_manager.to_decimal(raw.get("max_discount"), None),
        stock_quantity=data_manager.to_decimal(raw.get("stock_quantity"), None),
        unlimited_stock=data_manager.to_bool(raw.get("unlimited_stock", False)),
        allow_backorder=data_manager.to_bool(raw.get("allow_backorder", False)),
    )


def parse_generation_request(
    payload: Mapping[str, Any],
    *,
    defaults: Optional[data_manager.GenerationDefaults] = None,
) -> GenerationParameters:
    """Translate a request mapping into :class:`GenerationParameters`.

    Optional constraint keys fall back to ``defaults``. When
    ``allowed_rates`` is omitted, the rates named by the targets are allowed.

    Raises:
        KeyError: If ``targets`` or ``catalog`` is missing.
        ValueError: If an amount or flag cannot be parsed.
    """

    defaults = defaults or data_manager.GenerationDefaults()
    targets = [
        TargetSpec(
            tax_rate=data_manager.to_decimal(raw["tax_rate"], ZERO),
            amount_excl=data_manager.to_decimal(raw.get("amount_excl"), None),
            amount_incl=data_manager.to_decimal(raw.get("amount_incl"), None),
        )
        for raw in payload["targets"]
    ]
    catalog = [catalog_entry_from_mapping(raw) for raw in payload["catalog"]]
    raw_rates = payload.get("allowed_rates")
    if raw_rates is None:
        allowed_rates = {target.tax_rate for target in targets}
    else:
        allowed_rates = {data_manager.to_decimal(rate, ZERO) for rate in raw_rates}

    return GenerationParameters(
        max_lines=int(payload.get("max_lines", defaults.max_lines)),
        min_price_incl=data_manager.to_decimal(payload.get("min_price_incl"), defaults.min_price_incl),
        max_price_incl=data_manager.to_decimal(payload.get("max_price_incl"), defaults.max_price_incl),
        allowed_rates=frozenset(allowed_rates),
        foreign_client=data_manager.to_bool(payload.get("foreign_client", False)),
        targets=tuple(targets),
        catalog=tuple(catalog),
        stamp_duty_enabled=data_manager.to_bool(payload.get("stamp_duty_enabled", defaults.stamp_duty_enabled)),
        stamp_duty_amount=data_manager.to_decimal(payload.get("stamp_duty_amount"), defaults.stamp_duty_amount),
    )


def handle_request(
    payload: Mapping[str, Any],
    *,
    context: Optional[SynthesisContext] = None,
    defaults: Optional[data_manager.GenerationDefaults] = None,
    policy: Optional[data_manager.GenerationPolicy] = None,
) -> Dict[str, Any]:
    """Stateless request handler: mapping in, response mapping out.

    When no ``context`` is supplied a fresh one is built with ``policy``,
    seeded from the optional ``seed`` key of the payload. Malformed payloads
    are reported as ``generation_error`` like any other unexpected failure.
    """

    try:
        params = parse_generation_request(payload, defaults=defaults)
        if context is None:
            seed = payload.get("seed")
            context = build_context(seed=int(seed) if seed is not None else None, policy=policy)
    except (KeyError, TypeError, ValueError) as exc:
        log.warning("Rejected malformed generation request: %s", exc)
        return GenerationResponse.failed(ErrorKind.GENERATION_ERROR, f"Invalid request: {exc}").to_payload()
    return run_generation(context, params).to_payload()


# ---------------------------------------------------------------------------
# Workbook-backed runtime used by the CLI
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the CLI."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the catalog workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Settings plus a live workbook handle and empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before reading or exporting.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def list_catalog(context: RuntimeContext) -> List[data_manager.CatalogEntry]:
    """Return the catalog snapshot, reading the workbook at most once."""

    if "catalog" not in context._cache:
        context._cache["catalog"] = list(data_manager.iter_catalog(context.workbook))
        log.debug("Populated catalog cache with %d entries", len(context._cache["catalog"]))
    return list(context._cache["catalog"])


def prepare_parameters(
    context: RuntimeContext,
    targets: Sequence[TargetSpec],
    *,
    max_lines: Optional[int] = None,
    min_price_incl: Optional[Decimal] = None,
    max_price_incl: Optional[Decimal] = None,
    allowed_rates: Optional[Iterable[Decimal]] = None,
    foreign_client: bool = False,
    stamp_duty_enabled: Optional[bool] = None,
) -> GenerationParameters:
    """Assemble :class:`GenerationParameters` from CLI input and settings.

    Unset constraints fall back to the ``[Generation]``/``[Invoice]`` defaults
    of ``config.ini``; unset allowed rates default to the targets' rates.
    """

    defaults = context.settings.defaults
    rates = allowed_rates if allowed_rates is not None else [target.tax_rate for target in targets]
    return GenerationParameters(
        max_lines=max_lines if max_lines is not None else defaults.max_lines,
        min_price_incl=min_price_incl if min_price_incl is not None else defaults.min_price_incl,
        max_price_incl=max_price_incl if max_price_incl is not None else defaults.max_price_incl,
        allowed_rates=frozenset(rates),
        foreign_client=foreign_client,
        targets=tuple(targets),
        catalog=tuple(list_catalog(context)),
        stamp_duty_enabled=defaults.stamp_duty_enabled if stamp_duty_enabled is None else stamp_duty_enabled,
        stamp_duty_amount=defaults.stamp_duty_amount,
    )


def generate_run_id(*, prefix: str = "G", when: Optional[datetime] = None) -> str:
    """Generate a sortable run identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``."""
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def export_lines(
    context: RuntimeContext,
    lines: Sequence[data_manager.GeneratedLine],
    *,
    timestamp: Optional[datetime] = None,
) -> str:
    """Append an accepted batch to the ``GeneratedLines`` sheet.

    This is the caller-side commit of a run; the engine never invokes it. The
    workbook is only modified in memory until :func:`persist_context` runs.

    Returns:
        str: Run identifier written on every exported row.

    Raises:
        BusinessRuleViolation: If ``lines`` is empty.
    """

    if not lines:
        raise BusinessRuleViolation("Refusing to export an empty batch of lines")
    run_id = generate_run_id(when=_resolve_timestamp(timestamp))
    data_manager.append_generated_lines(context.workbook, lines, run_id=run_id)
    log.info("Exported %d generated lines as run '%s'", len(lines), run_id)
    return run_id


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and an
            empty cache.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
